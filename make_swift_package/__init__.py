"""make-swift-package.

A build utility that packages one or more OpenUSD installations into a single
multi-platform Swift package.
"""

__all__: list[str] = ["__version__"]

__version__: str = "0.1.0"
