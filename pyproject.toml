[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "sriovconf"
version = "4.7.0"
description = "SR-IOV network device configuration: discovery, sysfs driver binding, policy validation and vendor plugins"
requires-python = ">=3.10"
keywords = [
    "sriov",
    "sr-iov",
    "networking",
    "pci",
    "sysfs",
    "virtual-function",
    "switchdev",
    "systemd",
    "admission",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking",
]
dependencies = [
    "jinja2",
    "pyyaml",
]

[project.optional-dependencies]
test = [
    "pytest",
    "cryptography",
]

[tool.hatch.build.targets.wheel]
packages = ["sriovconf"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
