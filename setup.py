#!/usr/bin/env python3
"""
Setup script for the dosegate package

Installs the dosegate service and its shared package from backend/.
"""

from setuptools import find_namespace_packages, setup

setup(
    name="dosegate",
    version="0.1.0",
    package_dir={"": "backend"},
    packages=find_namespace_packages(
        where="backend",
        include=["dosegate", "dosegate.*", "shared", "shared.*"],
        exclude=["dosegate.tests", "dosegate.tests.*"],
    ),
    python_requires=">=3.10",
    install_requires=[
        # 🚀 Web Framework
        "fastapi>=0.104.1",
        "uvicorn[standard]>=0.24.0",

        # 📋 Data Validation & Settings
        "pydantic>=2.5.0",
        "pydantic-settings>=2.1.0",
        "python-dotenv>=1.0.0",

        # 🌐 HTTP & File Handling
        "python-multipart>=0.0.6",

        # 📊 Data Processing
        "openpyxl>=3.1.2",
    ],
    extras_require={
        "test": [
            "pytest>=7.4",
            "pytest-asyncio>=0.21",
            "httpx>=0.25.2",
        ],
    },
)
