from setuptools import setup, find_packages

setup(
    name="keyhold",
    version="0.1.0",
    description="Local secrets daemon and registry client for sharing credentials across teams",
    author="keyhold contributors",
    license="MIT",
    packages=find_packages(include=["keyhold", "keyhold.*"]),
    install_requires=[
        "httpx>=0.27",
        "pydantic>=2.5",
        "cryptography>=42.0",
        "python-dotenv>=1.0.0",
        "typer>=0.12",
        "rich>=13.0",
        "setproctitle>=1.3",
    ],
    extras_require={
        "test": ["pytest>=8.0"],
    },
    entry_points={
        "console_scripts": [
            "keyhold=keyhold.main:keyhold",
        ],
    },
    python_requires=">=3.10",
    long_description=open("README.md").read(),
    long_description_content_type="text/markdown",
)
