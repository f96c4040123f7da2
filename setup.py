"""Setup configuration for renderq."""

from setuptools import setup, find_packages

setup(
    name="renderq",
    version="1.0.0",
    description="Background render queue for command-line renderers such as aerender",
    packages=find_packages(include=["renderq", "renderq.*"]),
    install_requires=[
        "click>=8.1.7",
        "pydantic>=2.5.0",
        "pydantic-settings>=2.1.0",
    ],
    extras_require={
        "test": ["pytest>=7.0"],
    },
    entry_points={
        "console_scripts": [
            "renderq=renderq.cli:cli",
        ],
    },
    python_requires=">=3.8",
)
