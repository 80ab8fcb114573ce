"""
Test factories for generating realistic test data.

Uses factory_boy for declarative test data generation.
"""

from .user import UserFactory
from .principal import PrincipalFactory

__all__ = [
    "UserFactory",
    "PrincipalFactory",
]
