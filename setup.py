#!/usr/bin/env python3
"""
Setup script for the Art-Net Receiver
"""

from setuptools import setup
import os

# Read the README file for long description
def read_readme():
    readme_path = os.path.join(os.path.dirname(__file__), 'README.md')
    if os.path.exists(readme_path):
        with open(readme_path, 'r', encoding='utf-8') as f:
            return f.read()
    return "Art-Net Receiver"

# Read requirements
def read_requirements():
    requirements_path = os.path.join(os.path.dirname(__file__), 'requirements.txt')
    if os.path.exists(requirements_path):
        with open(requirements_path, 'r', encoding='utf-8') as f:
            return [line.strip() for line in f if line.strip() and not line.startswith('#')]
    return []

setup(
    name="artnet-receiver",
    version="1.0.0",
    description="Receives Art-Net DMX data over UDP and answers ArtPoll discovery",
    long_description=read_readme(),
    long_description_content_type="text/markdown",
    author="",
    author_email="",
    url="",
    py_modules=["artnet_codec", "artnet_receiver"],
    install_requires=read_requirements(),
    extras_require={
        "test": ["pytest>=7"],
    },
    python_requires=">=3.8",
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Multimedia",
        "Topic :: System :: Networking",
    ],
    keywords="art-net artnet dmx lighting udp receiver",
    entry_points={
        "console_scripts": [
            "artnet-receiver=artnet_receiver:main",
        ],
    },
    include_package_data=True,
    zip_safe=False,
)
