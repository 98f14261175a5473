"""
Adapters package for the Gateway Service.

Contains HTTP client wrappers for internal dependencies (user
management). These adapters encapsulate:

- Base URLs and request shapes
- Error handling that maps to shared errors

Keep adapters thin and side-effect free outside of explicit calls.
"""

from .user_directory_client import UserDirectoryClient, UserRecord

__all__ = [
    "UserDirectoryClient",
    "UserRecord",
]
