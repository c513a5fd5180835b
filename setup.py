from setuptools import find_packages, setup

setup(
    name="pipeline-conductor",
    version="1.0.0",
    description="Declarative pipeline orchestration with a durable job queue and monitoring",
    packages=find_packages(include=["conductor", "conductor.*"]),
    install_requires=[line for line in open("requirements-core.txt").read().splitlines() if line],
    extras_require={
        "test": ["pytest>=7.0", "pytest-asyncio>=0.21"],
    },
    python_requires=">=3.9",
    entry_points={
        "console_scripts": [
            "conductor=conductor.cli:main",
        ],
    },
)
