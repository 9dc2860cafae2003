"""Declarative base for the ledger tables."""

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass
