"""Setup file for development installation."""

from setuptools import setup, find_packages

setup(
    name="project-chat-sync",
    version="0.1.0",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    python_requires=">=3.10",
    install_requires=[
        "pydantic>=2.5",
        "structlog>=23.1",
        "httpx>=0.27",
        "websockets>=14.0",
        "fastapi>=0.110",
        "prometheus-client>=0.19",
        "opentelemetry-instrumentation-fastapi>=0.45b0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4",
            "pytest-asyncio>=0.23",
        ],
    },
)
