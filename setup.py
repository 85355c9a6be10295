import re

from setuptools import find_packages, setup


NAME = "codeskew"
SUMMARY = "WGSL preprocessor and compute pipeline runner for compute.toys style shaders"

with open(f"{NAME}/__init__.py") as fh:
    VERSION = re.search(r"__version__ = \"(.*?)\"", fh.read()).group(1)

runtime_deps = ["wgpu>=0.19.0", "numpy", "requests", "Pillow", "rendercanvas"]
extras_require = {
    "tests": ["pytest"],
    "window": ["glfw"],
}


setup(
    name=NAME,
    version=VERSION,
    packages=find_packages(
        exclude=["tests", "tests.*", "examples", "examples.*"]
    ),
    package_data={NAME: ["include/*/*.wgsl"]},
    python_requires=">=3.9.0",
    install_requires=runtime_deps,
    extras_require=extras_require,
    entry_points={"console_scripts": ["codeskew-toy = codeskew.cli:main_cli"]},
    license="BSD 2-Clause",
    description=SUMMARY,
    long_description=open("README.md").read(),
    long_description_content_type="text/markdown",
    url="https://github.com/cyrup-ai/codeskew",
)
