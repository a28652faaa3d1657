from setuptools import setup, find_packages

setup(
    name="memory-ingestion",
    version="0.1.0",
    description="Exactly-once activity ingestion and belief correction pipeline for a memory store",
    packages=find_packages(include=["memory_ingestion", "memory_ingestion.*"]),
    install_requires=[
        "beautifulsoup4>=4.12.0",
        "markdownify>=0.11.0",
        "pyyaml>=6.0",
        "pydantic>=2.0.0",
        "pydantic-settings>=2.0.0",
        "click>=8.1.0",
        "httpx>=0.25.0",
        "aiofiles>=23.0.0",
        "structlog>=23.0.0",
        "tenacity>=8.2.0",
        "python-dotenv>=1.0.0",
        "rich>=13.0.0",
        "inngest>=0.4.0",
        "fastapi>=0.104.0",
        "uvicorn>=0.24.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.21.0",
            "pytest-cov>=4.1.0",
            "mypy>=1.5.0",
            "black>=23.7.0",
            "flake8>=6.0.0",
            "isort>=5.12.0",
        ]
    },
    entry_points={
        "console_scripts": [
            "memory-ingestion=memory_ingestion.cli:cli",
        ]
    },
    python_requires=">=3.9",
)
