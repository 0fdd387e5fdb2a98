[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "sipbridge"
version = "0.0.1"
description = "Core building blocks of a SIP bridge: URIs, header mapping, call metrics and call transfer coordination"
requires-python = ">=3.10"
dependencies = []
keywords = ["sip", "telephony", "voip", "metrics", "call-transfer"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Communications :: Telephony",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["sipbridge"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"
