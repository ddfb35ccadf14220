from setuptools import setup, find_packages

setup(
    name="drive-migrator",
    version="0.1.0",
    description="Idempotent cloud-to-cloud transfer jobs supervised on top of rclone",
    author="Drive Migrator Team",
    packages=find_packages(include=["config", "config.*", "drive_migrator", "drive_migrator.*"]),
    install_requires=[
        "pydantic>=2.0.0",
        "psutil>=5.9.0",
        "aiohttp>=3.8.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
            "black>=22.0.0",
            "isort>=5.0.0",
        ],
    },
    python_requires=">=3.11",
)
