from setuptools import setup, find_packages

setup(
    name="ratekeeper",
    version="0.1.0",
    packages=find_packages(include=["ratekeeper", "ratekeeper.*"]),
    python_requires=">=3.11",
    install_requires=[
        "fastapi>=0.110",
        "pydantic>=2.5",
        "pydantic-settings>=2.2",
        "redis>=5.0.1",
        "starlette>=0.36",
        "uvicorn>=0.27",
    ],
    extras_require={
        "test": [
            "httpx>=0.27",
            "pytest>=8.0",
            "pytest-asyncio>=0.23",
            "fakeredis[lua]>=2.21",
        ],
    },
    entry_points={
        "console_scripts": [
            "ratekeeper=ratekeeper.app.server:run",
        ],
    },
)
