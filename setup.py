from setuptools import setup, find_packages

setup(
    name="chainpulse",
    version="0.1.0",
    packages=find_packages(include=["chainpulse", "chainpulse.*"]),
    python_requires=">=3.11",
    install_requires=[
        "fastapi",
        "httpx",
        "pydantic",
        "pydantic-settings",
        "uvicorn",
    ],
    extras_require={
        "test": [
            "pytest",
            "pytest-asyncio",
            "respx",
        ],
    },
)
