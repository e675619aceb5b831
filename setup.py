"""
Setup configuration for the OCTACLUSTER model
"""

from setuptools import setup, find_packages
from pathlib import Path

# Read README
this_directory = Path(__file__).parent
long_description = (this_directory / "README.md").read_text(encoding="utf-8")

setup(
    name="octacluster",
    version="0.1.0",
    description="Functional model of a NUMA-aware, directory-coherent eight-core cluster",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(include=["octacluster", "octacluster.*"]),
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "Topic :: System :: Hardware :: Symmetric Multi-processing",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Operating System :: OS Independent",
    ],
    python_requires=">=3.10",
    install_requires=[
        "numpy>=1.26.0",
        "pydantic>=2.5.0,<3.0.0",
        "pydantic-settings>=2.1.0",
        "python-dotenv>=1.0.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.23.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "octacluster=octacluster.__main__:main",
        ],
    },
    include_package_data=True,
    zip_safe=False,
)
