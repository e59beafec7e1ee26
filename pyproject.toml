[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "raftnode"
version = "0.1.0"
description = "A small Raft-style consensus node with leader election, heartbeats and log replication over TCP"
requires-python = ">=3.10"
dependencies = []
keywords = ["raft", "consensus", "leader-election", "distributed-systems", "replication"]
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
    "Topic :: System :: Distributed Computing",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
raftnode = "raftnode.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["raftnode"]

[tool.pytest.ini_options]
addopts = "-ra"
