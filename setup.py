from setuptools import setup, find_packages

setup(
    name="volsmile",
    version="0.3.0",
    description="Arbitrage-checked SVI volatility smile fitting from option quotes",
    author="Leo",
    author_email="tabbakhianhatef@gmail.com",
    url="https://github.com/Leotaby/vol-surface-builder",
    packages=find_packages(exclude=["tests", "tests.*"]),
    py_modules=["main"],
    python_requires=">=3.10",
    install_requires=[
        "numpy>=1.24",
        "pandas>=2.0",
        "scipy>=1.11",
        "matplotlib>=3.7",
        "plotly>=5.15",
    ],
    extras_require={
        "dev": ["pytest>=7.0", "black", "flake8"],
    },
    entry_points={
        "console_scripts": [
            "volsmile=main:main",
        ],
    },
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Topic :: Office/Business :: Financial",
        "Topic :: Scientific/Engineering",
    ],
)
