from .client import PrismaClientManager
from .repositories import (
    CredentialRepository,
    InMemoryCredentialRepository,
    PrismaCredentialRepository,
    parse_whitelist,
)

__all__ = [
    "CredentialRepository",
    "InMemoryCredentialRepository",
    "PrismaClientManager",
    "PrismaCredentialRepository",
    "parse_whitelist",
]
