from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

with open("requirements.txt", "r", encoding="utf-8") as f:
    requirements = f.read().splitlines()

setup(
    name="printsentry",
    version="1.0.0",
    author="PrintSentry Contributors",
    description="Network printer discovery and monitoring agent.",
    long_description=long_description,
    long_description_content_type="text/markdown",
    url="https://github.com/your-repo/PrintSentry",
    packages=find_packages(exclude=["tests", "tests.*"]),
    include_package_data=True,
    install_requires=requirements,
    extras_require={
        "dev": ["pytest>=7.0", "httpx>=0.24"],
    },
    entry_points={
        "console_scripts": [
            "printsentry=printsentry.cli:main",
        ],
    },
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: POSIX :: Linux",
        "Operating System :: MacOS :: MacOS X",
        "Topic :: System :: Networking :: Monitoring",
        "Topic :: Printing",
    ],
    python_requires=">=3.11",
)
