"""
Shared modules for the bots.

Import submodules directly, e.g.
    from bots.shared.logging_utils import setup_logger
"""
