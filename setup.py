from setuptools import setup, find_packages

setup(
    name="route-observer-controller",
    version="0.1.0",
    packages=find_packages(),
    install_requires=[
        "kopf",
        "kubernetes",
        "flask",
        "urllib3",
    ],
    extras_require={
        "test": ["pytest"],
    },
    entry_points={
        "console_scripts": [
            "route-observer-controller=observer.controller:main",
        ],
    },
    python_requires=">=3.9",
)
