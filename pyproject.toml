[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "fpgakit"
version = "0.1.0"
description = "FPGA bitstream parsing, PCI sysfs discovery, driver ioctl definitions and a device-plugin core"
requires-python = ">=3.10"
dependencies = []
keywords = ["fpga", "bitstream", "gbs", "aocx", "sysfs", "pci", "ioctl", "device-plugin"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Hardware",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["fpgakit"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
