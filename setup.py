from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

setup(
    name="vpn-relay-node",
    version="1.0.0",
    author="Relay Node Team",
    author_email="relaynode@example.com",
    description="VPN relay node: tunnel sessions, traffic policies, multi-hop routing and a SOCKS5 relay",
    long_description=long_description,
    long_description_content_type="text/markdown",
    url="https://github.com/relaynode/vpn-relay-node",
    packages=find_packages(),
    py_modules=["main"],
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
    ],
    python_requires=">=3.8",
    install_requires=[
        "pycryptodome>=3.14.1",
        "cryptography>=3.4",
        "flask>=2.0.0",
        "werkzeug>=2.0.0",
        "sqlalchemy>=2.0",
        "prometheus_client>=0.14",
        "psutil>=5.8",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
        ],
    },
    entry_points={
        'console_scripts': [
            'relay-node=main:server_main',
            'relay-socks5=main:socks_main',
            'relay-web=main:web_main',
        ],
    },
    include_package_data=True,
)
