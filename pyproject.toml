[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "transitionrule"
version = "0.1.0"
description = "Pod transition rules: stage registration, rule processing and reconciliation of rule status for pods"
requires-python = ">=3.10"
dependencies = []
keywords = ["pods", "transition", "rules", "controller", "webhook", "availability"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Clustering",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["transitionrule"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
