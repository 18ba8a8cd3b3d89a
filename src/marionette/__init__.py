"""Marionette agentless provisioning toolkit."""

from .graph import TaskGraph
from .inventory import Inventory, InventoryLoader
from .runner import RunOptions, TaskRunner, run

__all__ = ["Inventory", "InventoryLoader", "RunOptions", "TaskGraph", "TaskRunner", "run"]
