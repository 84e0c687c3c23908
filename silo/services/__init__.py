"""Services that own the long-lived SILO components."""

from silo.services.workbench import Workbench

__all__ = [
    "Workbench",
]
