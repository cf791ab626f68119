"""Exceptions for failures that are not ordinary business rejections."""

from __future__ import annotations


class TaskboardError(Exception):
    """Base class for unexpected taskboard failures."""


class StorageConfigError(TaskboardError):
    """Database URL is unusable or the driver for it is not installed."""


class UnknownColumnError(TaskboardError, ValueError):
    """A store call referenced a column the table does not have."""

    def __init__(self, table: str, column: str) -> None:
        super().__init__(f"Unknown column for {table}: {column}")
        self.table = table
        self.column = column
