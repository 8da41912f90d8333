[build-system]
requires = ["setuptools>=61.0"]
build-backend = "setuptools.build_meta"

[project]
name = "pagetree"
version = "0.1.0"
description = "Copy-on-write B-tree over fixed-size pages with transactional page memory"
requires-python = ">=3.10"
dependencies = []
keywords = ["btree", "b-tree", "storage", "pages", "copy-on-write", "database"]
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
    "Topic :: Database :: Database Engines/Servers",
    "Typing :: Typed",
]

[project.optional-dependencies]
test = ["pytest", "hypothesis"]

[tool.setuptools.packages.find]
include = ["pagetree*"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
