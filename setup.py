"""
FluidNet: data pipeline and simulation driver for learned fluid solvers

Loads Manta-generated simulation runs, validates and caches them, builds
augmented training batches and runs trained models on 3D scenes.
"""

from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

with open("requirements.txt", "r", encoding="utf-8") as fh:
    requirements = [line.strip() for line in fh if line.strip() and not line.startswith("#")]

setup(
    name="fluidnet",
    version="0.1.0",
    author="FluidNet Team",
    author_email="fluidnet@example.com",
    description="Data pipeline and simulation driver for learned fluid solvers",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests*", "scripts*"]),
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Science/Research",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Topic :: Scientific/Engineering :: Physics",
    ],
    python_requires=">=3.9",
    install_requires=requirements,
    extras_require={
        "dev": [
            "pytest>=7.4.0",
            "pytest-cov>=4.1.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "fluidnet-stats=fluidnet.cli:stats_main",
            "fluidnet-simulate=fluidnet.cli:simulate_main",
        ],
    },
)
