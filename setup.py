from setuptools import setup, find_packages

setup(
    name="redis-rate",
    version="0.1.0",
    packages=find_packages(include=["redis_rate", "redis_rate.*"]),
    python_requires=">=3.11",
    install_requires=[
        "redis>=5.0.1",
        "pydantic>=2.0",
        "pydantic-settings>=2.0",
        "fastapi>=0.100",
        "starlette",
    ],
    extras_require={
        "test": [
            "pytest",
            "pytest-asyncio",
            "httpx",
            "fakeredis[lua]",
        ],
    },
)
