"""Shared fixtures: in-memory SQLite source and target databases."""

from functools import partial

import pytest
import sqlalchemy as sa
from sqlalchemy.pool import StaticPool

from migration_engine.adapters.factory import AdapterFactory
from migration_engine.adapters.sql import SqlAdapter
from migration_engine.models.execution import ETLExecution, ETLPipelineConfig
from migration_engine.models.schema import (
    ColumnMapping,
    Connection,
    ConnectionRole,
    EngineType,
    TableKind,
    TableMapping,
    TransformationConfig,
    TransformationType,
)
from migration_engine.services.repository import (
    InMemoryMappingRepository,
    InMemoryReportSink,
    MappingProject,
)
from migration_engine.stages.base import ExecutionControl, StageContext
from migration_engine.stages.plan import MigrationPlan, PlannedTable

PROJECT_ID = "shop"

COUNTRY_CODES = ["fr", "de", "it", "es", "nl"]


def make_engine(attach_staging: bool = False) -> sa.engine.Engine:
    """A single-connection in-memory SQLite engine."""
    engine = sa.create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    if attach_staging:
        @sa.event.listens_for(engine, "connect")
        def attach(dbapi_connection, connection_record):
            dbapi_connection.execute("ATTACH DATABASE ':memory:' AS staging")
    return engine


def shop_tables(metadata: sa.MetaData) -> dict:
    return {
        "countries": sa.Table(
            "countries", metadata,
            sa.Column("id", sa.Integer, primary_key=True),
            sa.Column("code", sa.String(2), nullable=False),
            sa.Column("name", sa.String(50)),
        ),
        "products": sa.Table(
            "products", metadata,
            sa.Column("id", sa.Integer, primary_key=True),
            sa.Column("name", sa.String(50), nullable=False),
            sa.Column("price", sa.Float),
        ),
        "orders": sa.Table(
            "orders", metadata,
            sa.Column("id", sa.Integer, primary_key=True),
            sa.Column("country_id", sa.Integer, nullable=False),
            sa.Column("product_id", sa.Integer, nullable=False),
            sa.Column("quantity", sa.Integer),
        ),
    }


def seed_source(engine, orders: int = 1000) -> dict:
    metadata = sa.MetaData()
    tables = shop_tables(metadata)
    metadata.create_all(engine)
    with engine.begin() as conn:
        conn.execute(tables["countries"].insert(), [
            {"id": i + 1, "code": code, "name": f"  Country {i + 1} "}
            for i, code in enumerate(COUNTRY_CODES)
        ])
        conn.execute(tables["products"].insert(), [
            {"id": i + 1, "name": f"Product {i + 1}", "price": 1.5 * (i + 1)}
            for i in range(20)
        ])
        conn.execute(tables["orders"].insert(), [
            {"id": i + 1, "country_id": i % 5 + 1, "product_id": i % 20 + 1, "quantity": i % 7 + 1}
            for i in range(orders)
        ])
    return tables


def create_target(engine, skip=()) -> dict:
    metadata = sa.MetaData()
    tables = shop_tables(metadata)
    for name in skip:
        metadata.remove(tables.pop(name))
    metadata.create_all(engine)
    return tables


def shop_project(include=("countries", "products", "orders")) -> MappingProject:
    source = Connection(engine_type=EngineType.POSTGRES, database="shop_source", role=ConnectionRole.SOURCE)
    target = Connection(engine_type=EngineType.POSTGRES, database="shop_target", role=ConnectionRole.TARGET)

    tables = {
        "countries": (
            TableMapping(source_table="countries", target_table="countries", load_order=1),
            [
                ColumnMapping(source_column="id", target_column="id", nullable=False),
                ColumnMapping(
                    source_column="code",
                    target_column="code",
                    nullable=False,
                    transformation=TransformationConfig(type=TransformationType.UPPERCASE),
                ),
                ColumnMapping(source_column="name", target_column="name"),
            ],
        ),
        "products": (
            TableMapping(source_table="products", target_table="products", load_order=2),
            [
                ColumnMapping(source_column="id", target_column="id", nullable=False),
                ColumnMapping(source_column="name", target_column="name", nullable=False),
                ColumnMapping(source_column="price", target_column="price"),
            ],
        ),
        "orders": (
            TableMapping(
                source_table="orders",
                target_table="orders",
                load_order=3,
                depends_on=["countries", "products"],
            ),
            [
                ColumnMapping(source_column="id", target_column="id", nullable=False),
                ColumnMapping(source_column="country_id", target_column="country_id", nullable=False),
                ColumnMapping(source_column="product_id", target_column="product_id", nullable=False),
                ColumnMapping(source_column="quantity", target_column="quantity"),
            ],
        ),
    }
    return MappingProject(
        project_id=PROJECT_ID,
        source=source,
        target=target,
        tables=[tables[name] for name in include],
    )


class SqliteAdapterFactory(AdapterFactory):
    """Serves pre-built SQLite engines; staging lives in the target engine."""

    def __init__(self, source, target, staging, source_engine=None, target_engine=None):
        super().__init__(source, target, staging)
        self.source_engine = source_engine
        self.target_engine = target_engine

    def open_source(self):
        return SqlAdapter(self.source_connection, engine=self.source_engine)

    def open_target(self):
        return SqlAdapter(self.target_connection, engine=self.target_engine)

    def open_staging(self):
        return SqlAdapter(self.target_connection, engine=self.target_engine)


class SeparateStagingFactory(SqliteAdapterFactory):
    """Staging in a database of its own, so loads stream rows into the target."""

    def __init__(self, source, target, staging, staging_engine=None, **engines):
        super().__init__(source, target, staging, **engines)
        self.staging_engine = staging_engine

    @property
    def staging_shares_target(self) -> bool:
        return False

    def open_staging(self):
        return SqlAdapter(self.target_connection, engine=self.staging_engine)


@pytest.fixture
def source_engine():
    engine = make_engine()
    yield engine
    engine.dispose()


@pytest.fixture
def target_engine():
    engine = make_engine(attach_staging=True)
    yield engine
    engine.dispose()


@pytest.fixture
def staging_engine():
    engine = make_engine(attach_staging=True)
    yield engine
    engine.dispose()


@pytest.fixture
def shop(source_engine, target_engine):
    """Seeded source, empty target and a repository with the shop project."""
    seed_source(source_engine)
    create_target(target_engine)
    repository = InMemoryMappingRepository()
    repository.add_project(shop_project())
    return repository


@pytest.fixture
def adapter_factory(source_engine, target_engine):
    return partial(SqliteAdapterFactory, source_engine=source_engine, target_engine=target_engine)


@pytest.fixture
def streaming_factory(source_engine, target_engine, staging_engine):
    return partial(
        SeparateStagingFactory,
        source_engine=source_engine,
        target_engine=target_engine,
        staging_engine=staging_engine,
    )


@pytest.fixture
def report_sink():
    return InMemoryReportSink()


@pytest.fixture
def pipeline_config():
    return ETLPipelineConfig(project_id=PROJECT_ID, batch_size=100, retry_delay_seconds=0)


def stage_context(tables, adapters=None, **options) -> StageContext:
    """A stage context over hand-built planned tables."""
    config = ETLPipelineConfig(project_id=PROJECT_ID, retry_delay_seconds=0, **options)
    plan = MigrationPlan(
        project_id=PROJECT_ID,
        source=Connection(engine_type=EngineType.COUCHDB, database="shop"),
        target=Connection(engine_type=EngineType.POSTGRES, database="shop", role=ConnectionRole.TARGET),
        tables=list(tables),
    )
    return StageContext(
        config=config,
        plan=plan,
        adapters=adapters,
        control=ExecutionControl(),
        execution=ETLExecution(project_id=PROJECT_ID),
        report_sink=InMemoryReportSink(),
    )


def planned(name, kind=TableKind.DIMENSION, columns=None) -> PlannedTable:
    return PlannedTable(
        mapping=TableMapping(name, name),
        columns=columns if columns is not None else [ColumnMapping("id", "id")],
        kind=kind,
    )
