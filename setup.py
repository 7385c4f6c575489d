from setuptools import setup, find_packages

setup(
    name="dissect.vhdx",
    version="1.0.0",
    description="A read-only decoder and consistency checker for Hyper-V VHDX files",
    packages=list(map(lambda v: "dissect." + v, find_packages("dissect"))),
    python_requires=">=3.9",
    install_requires=[
        "dissect.cstruct>=4.0,<5.0",
        "dissect.util>=3.0,<4.0",
    ],
    extras_require={
        "full": [
            "rich",
        ],
        "test": [
            "pytest",
        ],
    },
    entry_points={
        "console_scripts": [
            "vhdx-inspect=dissect.vhdx.tools.vhdx:main",
        ]
    },
)
