from setuptools import setup, find_packages

setup(
    name="flowguard",
    version="0.1.0",
    packages=find_packages(include=["flowguard", "flowguard.*"]),
    python_requires=">=3.11",
    install_requires=[
        "fastapi",
        "starlette",
        "httpx",
        "pydantic>=2",
        "pydantic-settings>=2.7",
    ],
    extras_require={
        "test": [
            "pytest",
            "pytest-asyncio",
        ],
    },
)
