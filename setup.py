from setuptools import setup, find_packages

setup(
    name="agentbridge",
    version="0.3.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    py_modules=["main"],
    include_package_data=True,
    install_requires=[
        "python-telegram-bot>=22.2",
        "httpx>=0.27.0",
        "pydantic>=2.5.0",
        "click>=8.1.7",
        "rich>=13.7.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.23.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "agentbridge=main:cli",
        ],
    },
    python_requires=">=3.10",
    author="Agent Bridge",
    description="Drive Claude Code or OpenCode from a Telegram chat",
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
)
