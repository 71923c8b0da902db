# setup.py
from setuptools import setup, find_namespace_packages

setup(
    name="predict_chain",
    version="0.1.0",
    packages=find_namespace_packages(include=["predict_chain", "predict_chain.*"]),
    python_requires=">=3.9",
    install_requires=[
        "msgpack",            # storage and hashing encoding
        "PyNaCl",             # ed25519 event signatures
        "pycryptodome",       # keccak-256
        "plyvel",             # LevelDB
        "prometheus_client",  # metrics
        "psutil",             # monitoring
    ],
    extras_require={
        "test": ["pytest"],
    },
    entry_points={
        "console_scripts": [
            "predict-chain-node=predict_chain.node:run",
        ],
    },
)
