[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "clusterq"
version = "0.1.0"
description = "A small TCP task cluster: a manager that queues and balances tasks, node agents that take them, and a client that submits them."
requires-python = ">=3.10"
dependencies = []
keywords = ["cluster", "task queue", "load balancing", "heartbeat", "distributed"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Console",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
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
clusterq-manager = "clusterq.manager:main"
clusterq-node = "clusterq.node:main"
clusterq-client = "clusterq.client:main"

[tool.hatch.build.targets.wheel]
packages = ["clusterq"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
