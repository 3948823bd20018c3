"""Setup script for the Ouroboros package."""

from setuptools import setup, find_packages

setup(
    name="ouroboros",
    version="0.1.0",
    packages=find_packages(exclude=("tests", "tests.*")),
    python_requires=">=3.11",
    install_requires=[
        "fastapi>=0.110",
        "uvicorn>=0.27",
        "pydantic>=2.5",
        "pydantic-settings>=2.1",
        "structlog>=24.1",
        "tenacity>=8.2",
        "prometheus-client>=0.19",
        "sqlalchemy>=2.0",
        "langchain-core>=0.2",
        "langchain-ollama>=0.1",
        "python-dotenv>=1.0",
    ],
    extras_require={
        "test": [
            "pytest>=8.0",
            "pytest-asyncio>=0.23",
            "httpx>=0.26",
        ],
    },
    description="Ouroboros - self-refining agent task graph orchestrator",
    author="Ouroboros Team",
)
