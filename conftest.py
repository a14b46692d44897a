"""
Pytest configuration for the buildfs test suite.

Most tests run unprivileged against MemoryBackend or a temporary
directory.  Tests that need CAP_MKNOD, CAP_CHOWN or mount(8) are marked
``root`` and skipped automatically unless the suite runs as root:

    pytest                  # unprivileged subset
    sudo pytest -m root     # privileged tests only
"""

import os

import pytest


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers",
        "root: tests requiring root privileges (skipped otherwise)")


def pytest_collection_modifyitems(config, items):
    if os.geteuid() == 0:
        return
    skip_root = pytest.mark.skip(reason="requires root privileges")
    for item in items:
        if "root" in item.keywords:
            item.add_marker(skip_root)
