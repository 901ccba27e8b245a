"""Setup script for the Payment Forwarding Engine."""

from setuptools import setup, find_packages

setup(
    name="payment-forwarding-engine",
    version="1.0.0",
    description="Lightning payment aggregation and forwarding engine with tip splitting",
    author="ML Roadmap Bootcamp",
    python_requires=">=3.10",
    packages=find_packages(include=["forwarding_engine", "forwarding_engine.*"]),
    install_requires=[
        line.strip()
        for line in open("requirements.txt")
        if line.strip() and not line.startswith("#") and not line.startswith("git+")
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.23.0",
            "pytest-mock>=3.12.0",
            "aiosqlite>=0.19.0",
            "fakeredis>=2.21.0",
        ],
        "dev": [
            "black>=23.0.0",
            "isort>=5.12.0",
            "flake8>=6.0.0",
            "mypy>=1.4.0",
            "pytest-cov>=4.1.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "forwarding-engine-api=forwarding_engine.api.main:run",
            "forwarding-engine-sweeper=forwarding_engine.workers.sweeper_worker:main",
            "forwarding-engine-outbox=forwarding_engine.workers.outbox_publisher:main",
        ]
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Financial and Insurance Industry",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
)
