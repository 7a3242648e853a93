"""
Shared utilities and infrastructure components.

Keep import side-effects to a minimum: submodules are imported explicitly.
"""
