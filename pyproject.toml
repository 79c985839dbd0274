[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "gatewayroute"
version = "0.1.0"
description = "Routing and proxying core for an API gateway: HTTP, WebSocket and gRPC-gateway routes on aiohttp, with load balancing and grayscale releases."
requires-python = ">=3.10"
keywords = ["gateway", "reverse-proxy", "routing", "websocket", "grpc", "load-balancing", "canary"]
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
    "Framework :: aiohttp",
    "Framework :: AsyncIO",
    "Topic :: Internet :: Proxy Servers",
    "Topic :: Internet :: WWW/HTTP",
]
dependencies = [
    "aiohttp",
    "grpcio",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[tool.hatch.build.targets.wheel]
packages = ["gatewayroute"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
