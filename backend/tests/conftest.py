import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from backend.app.api.deps import get_db
from backend.app.db.models.models_v1 import (
    Base,
    Party,
    new_id,
    PurchaseOrder,
    PurchaseOrderLine,
    BackorderRequest,
)
from backend.app.db.models.core_types import POStatus

TENANT = "TestTenant"


@pytest.fixture(scope="function")
def engine():
    """
    Base SQLite in-memory isolée par test.

    pysqlite gère mal les SAVEPOINT : on désactive son BEGIN implicite et on
    émet BEGIN nous-mêmes (recette SQLAlchemy), sinon begin_nested() casse.
    """
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(eng, "connect")
    def _do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(eng, "begin")
    def _do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(bind=eng)
    try:
        yield eng
    finally:
        Base.metadata.drop_all(bind=eng)
        eng.dispose()


@pytest.fixture(scope="function")
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture(scope="function")
def db_session(session_factory) -> Session:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(scope="function")
def client(session_factory):
    from backend.app.main import app

    def _override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = _override_get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.pop(get_db, None)


@pytest.fixture
def vendor(db_session):
    party = Party(tenant_id=TENANT, name="Pacific Supply", roles=["vendor"])
    db_session.add(party)
    db_session.commit()
    return party


@pytest.fixture
def make_po(db_session, vendor):
    """
    Fabrique de PO : make_po(lines=[{"qty_ordered": 10, ...}], status=...).
    """

    def _make(lines=None, status=POStatus.approved, vendor_id="__default__", tenant_id=TENANT):
        po = PurchaseOrder(
            tenant_id=tenant_id,
            status=status,
            vendor_id=vendor.id if vendor_id == "__default__" else vendor_id,
        )
        for i, attrs in enumerate(lines or [{"qty_ordered": 10}]):
            po.lines.append(
                PurchaseOrderLine(
                    id=attrs.get("id") or new_id(),
                    position=i,
                    legacy_ref=attrs.get("legacy_ref"),
                    item_id=attrs.get("item_id", f"ITEM-{i}"),
                    qty_ordered=attrs["qty_ordered"],
                    qty_received=0,
                    backorder_request_ids=attrs.get("backorder_request_ids", []),
                )
            )
        db_session.add(po)
        db_session.commit()
        return po

    return _make


@pytest.fixture
def make_backorder(db_session):
    def _make(qty=5, remaining_qty=None, fulfilled_qty=0, item_id="ITEM-0", **kw):
        bo = BackorderRequest(
            tenant_id=kw.pop("tenant_id", TENANT),
            so_id=kw.pop("so_id", "SO-1"),
            so_line_id=kw.pop("so_line_id", "SO-1-L1"),
            item_id=item_id,
            qty=qty,
            remaining_qty=remaining_qty,
            fulfilled_qty=fulfilled_qty,
            **kw,
        )
        db_session.add(bo)
        db_session.commit()
        return bo

    return _make
