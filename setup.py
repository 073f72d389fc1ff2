from setuptools import setup, find_packages

setup(
    name="codemend",
    version="0.1.0",
    packages=find_packages(include=["codemend", "codemend.*"]),
    python_requires=">=3.10",
    install_requires=[
        "click",
        "pyyaml",
        "structlog",
        "gitignore-parser",
        "pydantic>=2",
        "sqlalchemy>=2",
        "GitPython",
        "networkx",
        "httpx",
        "backoff",
        "openai>=1",
        "anthropic",
        "rich",
    ],
    extras_require={
        "test": [
            "pytest",
            "pytest-httpserver",
        ],
    },
    entry_points={
        "console_scripts": [
            "codemend = codemend.cli.main:main",
        ],
    },
)
