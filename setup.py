from setuptools import setup, find_namespace_packages

setup(
    name="matchguard",
    version="0.1.0",
    packages=find_namespace_packages(include=["matchguard", "matchguard.*"]),
    python_requires=">=3.12",
    install_requires=[
        "fastapi>=0.110",
        "pydantic>=2.6",
        "pydantic-settings>=2.7",
        "redis>=5.0.1",
    ],
    extras_require={
        "test": [
            "pytest>=8.0",
            "pytest-asyncio>=0.23",
            "httpx>=0.27",
        ],
    },
)
