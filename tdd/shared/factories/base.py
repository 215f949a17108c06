"""
Base factory classes and utilities.

This module provides the foundation for creating test data factories
using factory_boy with async SQLAlchemy support: factories build plain
instances and ``persist`` adds and commits them through an AsyncSession.
"""
from typing import Any, TypeVar

import factory
from faker import Faker
from sqlalchemy.ext.asyncio import AsyncSession

fake = Faker()

T = TypeVar("T")


class BaseFactory(factory.Factory):
    """Base factory for all model factories."""

    class Meta:
        abstract = True

    @classmethod
    def _create(cls, model_class, *args, **kwargs):
        """Override create to handle SQLAlchemy models."""
        return model_class(*args, **kwargs)

    @classmethod
    async def create_in(cls, session: AsyncSession, **kwargs) -> Any:
        """Build an instance and commit it."""
        return await persist(session, cls.build(**kwargs))


async def persist(session: AsyncSession, obj: T) -> T:
    session.add(obj)
    await session.commit()
    return obj


def generate_name(prefix: str = "") -> str:
    """A lowercase name that is valid for users and repositories."""
    return f"{prefix}{fake.unique.user_name().replace('.', '-')}"


def generate_oid() -> str:
    """A random 64-hex LFS object id."""
    return fake.sha256(raw_output=False)
