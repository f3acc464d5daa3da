[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "cantoolkit"
version = "0.1.0"
description = "Command line tools for ISO-TP (ISO 15765-2) transfers, protocol dumps and J1939 address claiming on Linux SocketCAN"
requires-python = ">=3.10"
dependencies = []
keywords = ["can", "socketcan", "isotp", "iso15765-2", "j1939", "uds", "automotive"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: Developers",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Embedded Systems :: Controller Area Network (CAN)",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
isotprecv = "cantoolkit.isotprecv:main"
isotpsend = "cantoolkit.isotpsend:main"
isotpserver = "cantoolkit.isotpserver:main"
isotpdump = "cantoolkit.isotpdump:main"
isotpperf = "cantoolkit.isotpperf:main"
jacd = "cantoolkit.jacd:main"

[tool.hatch.build.targets.wheel]
packages = ["cantoolkit"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
