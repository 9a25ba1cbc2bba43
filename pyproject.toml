[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "xvkit"
version = "0.1.0"
description = "Teaching-kernel building blocks: ELF loading, boot tables, an on-disk file system, a small network stack and a framebuffer console"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "operating-system",
    "kernel",
    "elf",
    "filesystem",
    "mkfs",
    "acpi",
    "arp",
    "icmp",
    "framebuffer",
    "education",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Education",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Operating System",
    "Topic :: System :: Filesystems",
    "Topic :: Education",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
xvkit-mkfs = "xvkit.mkfs:main"
xvkit-grep = "xvkit.grep:main"

[tool.hatch.build.targets.wheel]
packages = ["xvkit"]

[tool.pytest.ini_options]
addopts = "-ra"
