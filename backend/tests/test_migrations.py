"""Tests that the Alembic schema matches the models"""
import importlib.util
from pathlib import Path

from alembic.migration import MigrationContext
from alembic.operations import Operations
from sqlalchemy import create_engine, inspect

from app.database import Base

VERSIONS = Path(__file__).resolve().parent.parent / "alembic" / "versions"


def _load_revision(filename: str):
    spec = importlib.util.spec_from_file_location(filename[:-3], VERSIONS / filename)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def _users_indexes(connection) -> dict:
    return {index["name"]: bool(index["unique"]) for index in inspect(connection).get_indexes("users")}


def test_initial_revision_email_index_matches_model():
    migrated = create_engine("sqlite://")
    with migrated.begin() as connection:
        with Operations.context(MigrationContext.configure(connection)):
            _load_revision("001_initial_schema.py").upgrade()
        migrated_indexes = _users_indexes(connection)
        migrated_uniques = inspect(connection).get_unique_constraints("users")

    created = create_engine("sqlite://")
    Base.metadata.create_all(bind=created)
    with created.connect() as connection:
        model_indexes = _users_indexes(connection)
        model_uniques = inspect(connection).get_unique_constraints("users")

    assert migrated_indexes["ix_users_email"] is True
    assert model_indexes["ix_users_email"] is True
    assert migrated_uniques == model_uniques == []
