"""Processors that turn raw source items into document envelopes."""

from .envelope_normalizer import clean_text, markup_to_text, normalize, parse_timestamp

__all__ = ['normalize', 'parse_timestamp', 'markup_to_text', 'clean_text']
