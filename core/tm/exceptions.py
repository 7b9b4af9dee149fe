"""
Translation Memory Exceptions
"""
from typing import Optional


class TMError(Exception):
    """Base exception for Translation Memory"""
    pass


class TMValidationError(TMError):
    """Invalid input, rejected before touching the store"""
    pass


class TMNotFoundError(TMError):
    """Entry id does not exist (any more)"""
    def __init__(self, entry_id: str):
        self.entry_id = entry_id
        super().__init__(f"TM entry not found: {entry_id}")


class TMStoreError(TMError):
    """Persistence failure, carries the operation and entry id if any"""
    def __init__(self, operation: str, message: str, entry_id: Optional[str] = None):
        self.operation = operation
        self.entry_id = entry_id
        target = f" (entry {entry_id})" if entry_id else ""
        super().__init__(f"[{operation}]{target} {message}")


class TMFormatError(TMError):
    """Malformed exchange data, whole document or a single unit"""
    def __init__(self, message: str, index: Optional[int] = None):
        self.index = index
        prefix = f"Unit {index}: " if index is not None else ""
        super().__init__(f"{prefix}{message}")
