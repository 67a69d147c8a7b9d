import pytest
from fastapi.testclient import TestClient

from devsandbox.api.app import app as fastapi_app
from devsandbox.api.app import build_components
from devsandbox.common.db.models import SessionStatus
from devsandbox.sandbox.inventory import WorktreeInventory


@pytest.fixture
def app(database, runtime, images, orchestrator):
    """The API app wired to the in-memory database, fake runtime and temporary directories."""
    build_components(fastapi_app, database, runtime=runtime)
    fastapi_app.state.images = images
    fastapi_app.state.orchestrator = orchestrator
    fastapi_app.state.inventory = WorktreeInventory(
        fastapi_app.state.store,
        orchestrator.worktrees,
        repos_dir=orchestrator.repos_dir,
        worktree_base=orchestrator.worktree_base,
    )
    yield fastapi_app
    for name in ("database", "store", "runtime", "images", "projects", "orchestrator", "inventory", "http_client"):
        if hasattr(fastapi_app.state, name):
            delattr(fastapi_app.state, name)


@pytest.fixture
def client(app):
    # No context manager, so the lifespan (real database, engine sync) never runs
    return TestClient(app)


@pytest.fixture
def running_session(store, project):
    """A session marked running with container port 5173 published on host port 49152."""
    session = store.create_session(project_id=project.id, name="web")
    store.update_container(session.id, "container-1", {5173: 49152})
    return store.update_status(session.id, SessionStatus.RUNNING)
