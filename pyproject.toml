[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "canutils"
version = "0.1.0"
description = "SocketCAN utilities: bit timing calculation, bus load monitoring, full-duplex testing and a BCM command server"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "can",
    "socketcan",
    "can-bus",
    "bit-timing",
    "bus-load",
    "broadcast-manager",
    "embedded",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: Developers",
    "Intended Audience :: Manufacturing",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Embedded Systems :: Controller Area Network (CAN)",
    "Topic :: System :: Networking :: Monitoring",
    "Topic :: Utilities",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
can-calc-bit-timing = "canutils.bittiming:main"
canbusload = "canutils.canbusload:main"
canfdtest = "canutils.canfdtest:main"
bcmserver = "canutils.bcmserver:main"

[tool.hatch.build.targets.wheel]
packages = ["canutils"]

[tool.hatch.build.targets.sdist]
include = ["canutils", "tests"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
