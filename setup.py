"""Setup script for Lab Billing."""

from setuptools import setup, find_packages

setup(
    name="lab-billing",
    version="0.1.0",
    description="Payment reconciliation and subscription billing for lab memberships",
    author="Lab Billing Team",
    python_requires=">=3.10",
    packages=find_packages(include=["lab_billing", "lab_billing.*"]),
    package_data={"lab_billing.database": ["migrations/*.mako"]},
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
            "lab-billing=lab_billing.cli:main",
            "lab-billing-api=lab_billing.api.main:run",
            "lab-billing-reconciliation-worker=lab_billing.workers.reconciliation_worker:main",
            "lab-billing-lifecycle-worker=lab_billing.workers.lifecycle_worker:main",
            "lab-billing-outbox-publisher=lab_billing.workers.outbox_publisher:main",
        ]
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Financial and Insurance Industry",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
)
