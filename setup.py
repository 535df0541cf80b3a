from setuptools import setup, find_packages

setup(
    name="vaultkeeper",
    version="0.1.0",
    packages=find_packages(include=["vaultkeeper", "vaultkeeper.*"]),
    install_requires=[
        "requests",
        "pyyaml",
        "numpy>=1.24",
        "tiktoken>=0.5",
        "watchdog>=3.0",
        "tqdm>=4.60",
    ],
    extras_require={
        # In-process GGUF models (install separately when needed)
        "local": [
            "llama-cpp-python>=0.2.60",
        ],
        "openai": [
            "openai>=1.0",
        ],
        "test": [
            "pytest>=7.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "vaultkeeper=vaultkeeper.cli:main",
        ],
    },
    author="Uday Kanth",
    description="Local-first retrieval-augmented chat over a markdown vault.",
)
