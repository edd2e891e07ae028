"""
VM Test Bench.

Boots built system images in QEMU virtual machines, drives them through an
ordered workflow of remote steps over SSH and decides whether the run passed.
"""

__version__ = "0.1.0"
