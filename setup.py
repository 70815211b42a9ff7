from setuptools import setup, find_namespace_packages

setup(
    name="kec",
    version="0.1.0",
    packages=find_namespace_packages(where="src", include=["kec", "kec.*"]),
    package_dir={"": "src"},
    install_requires=[
        "pydantic>=2.0",
        "pyyaml>=6.0",
        "click>=8.0",
        "psutil>=5.9",
        "tenacity>=8.0",
        "python-dotenv>=1.0",
        "jinja2>=3.0",
        "kubernetes>=28.1",
        "prometheus_client>=0.17",
    ],
    extras_require={
        "dev": [
            "black>=23.0",
        ],
        "test": [
            "pytest>=7.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "kec=kec.CLI.main:main",
        ],
    },
)
