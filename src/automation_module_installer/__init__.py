"""
automation module installer: install PowerShell modules and their dependencies into Azure Automation accounts.
"""

__all__ = [
    "config",
    "registry",
    "resolver",
    "planner",
    "executor",
    "provisioning",
    "session",
    "history",
    "manifest",
]
