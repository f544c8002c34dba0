#!/usr/bin/python
# -*- encoding: utf-8 -*-
import ast
import re

from setuptools import find_packages
from setuptools import setup

## The version number is kept in one place only, as
## storagewire.__version__, and parsed out here.
_version_re = re.compile(r"__version__\s+=\s+(.*)")
with open("storagewire/__init__.py", "rb") as f:
    version = str(
        ast.literal_eval(_version_re.search(f.read().decode("utf-8")).group(1))
    )

if __name__ == "__main__":
    test_packages = [
        "pytest",
        "pytest-coverage",
        "coverage",
    ]

    setup(
        name="storagewire",
        version=version,
        description="Sans-I/O wire protocol engine for table, blob, file and queue storage services",
        long_description=open("README.md").read(),
        long_description_content_type="text/markdown",
        classifiers=[
            "Development Status :: 4 - Beta",
            "Intended Audience :: Developers",
            "License :: OSI Approved :: Apache Software License",
            "Operating System :: OS Independent",
            "Programming Language :: Python",
            "Programming Language :: Python :: 3",
            "Topic :: Internet :: WWW/HTTP",
            "Topic :: Software Development :: Libraries " ":: Python Modules",
        ],
        keywords="storage table blob file queue odata batch",
        license="Apache-2.0",
        packages=find_packages(exclude=["tests", "tests.*"]),
        include_package_data=True,
        zip_safe=False,
        python_requires=">=3.8",
        install_requires=[
            "lxml",
            "requests",
        ],
        extras_require={
            "test": test_packages,
            "yaml": ["PyYAML"],
        },
    )
