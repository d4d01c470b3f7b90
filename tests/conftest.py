import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from taskboard.db import Base, get_session, make_engine
from taskboard.main import app
from taskboard.storage import Storage


@pytest.fixture
def engine():
    engine = make_engine("sqlite://")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autoflush=False, bind=engine)


@pytest.fixture
def storage(session_factory):
    session = session_factory()
    yield Storage(session)
    session.close()


@pytest.fixture
def client(session_factory):
    def override_session():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_session] = override_session
    yield TestClient(app)
    app.dependency_overrides.clear()
