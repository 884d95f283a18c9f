from setuptools import find_packages, setup


install_requires = (
    "neuro-logging>=25.1.0",
    "aiohttp>=3.10",
    "aiohttp-apispec>=3.0.0b2",
    "marshmallow>=3.18,<4",
    "yarl>=1.9",
    "pydantic>=2.5",
    "pydantic-settings>=2.1",
    "lark>=1.1.9",
    "cachetools>=5.3",
    "uvloop>=0.19",
)

setup(
    name="query-autocomplete",
    version="0.1.0",
    package_dir={"": "src"},
    packages=find_packages("src"),
    python_requires=">=3.11",
    install_requires=install_requires,
    extras_require={
        "test": [
            "pytest>=8.0",
            "pytest-asyncio>=0.23",
        ]
    },
    entry_points={
        "console_scripts": [
            "completion-api=query_autocomplete.api:run_completion_api",
        ]
    },
    zip_safe=False,
)
