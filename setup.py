"""Build p2pchat package."""
import setuptools

with open("README.md") as f:
    long_desc = f.read()

setuptools.setup(
    name="p2pchat",
    version="0.1.0",
    description=(
        "Peer-to-peer chat among numbered participants over relayed "
        "WebRTC data channels"
    ),
    long_description=long_desc,
    long_description_content_type="text/markdown",
    packages=setuptools.find_packages(exclude=["tests", "tests.*"]),
    classifiers=[
        "Programming Language :: Python :: 3",
        "Operating System :: OS Independent",
    ],
    python_requires=">=3.10",
    install_requires=[
        "aiortc>=1.6.0",
        "base58>=2.1.0",
        "click",
        "cryptography>=39.0.1",
        "pydantic>=2",
        "pyee>=9",
        "tomli ; python_version<'3.11'",
        "tomli-w",
        "typing-extensions ; python_version<'3.11'",
        "websockets>=13",
    ],
    extras_require={
        "dev": [
            "pytest",
            "pytest-asyncio>=0.23.0",
            "pytest-timeout",
            "uvloop ; sys_platform!='win32'",
        ],
    },
    entry_points={
        "console_scripts": [
            "p2pchat=p2pchat.cli:cli",
            "p2pchat-relay=p2pchat.relay.run:cli",
        ],
    },
)
