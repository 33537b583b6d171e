[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "pixelbreak"
version = "0.18.1"
description = "A Pixelflut server: a shared canvas that clients paint on over plain TCP"
requires-python = ">=3.11"
dependencies = []
keywords = ["pixelflut", "canvas", "tcp", "server", "game", "asyncio"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: End Users/Desktop",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Framework :: AsyncIO",
    "Topic :: Games/Entertainment",
]

[project.optional-dependencies]
test = ["pytest", "pytest-asyncio"]

[project.scripts]
pixelbreak = "pixelbreak.app:main"

[tool.hatch.build.targets.wheel]
packages = ["pixelbreak"]

[tool.pytest.ini_options]
addopts = "-ra"
