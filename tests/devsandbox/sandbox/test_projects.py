import pytest

from devsandbox.sandbox.errors import NotFoundError, ValidationError
from devsandbox.sandbox.projects import ProjectService, validation_errors
from devsandbox.sandbox.schemas import ProjectCreate, ProjectUpdate

VALID = {
    "name": "web-app",
    "environment": {"base_image": "node:20-bookworm", "ports": [5173]},
    "git": {"remote": "git@github.com:acme/web-app.git", "default_branch": "main"},
}


@pytest.fixture
def projects(store):
    return ProjectService(store)


def test_validation_errors_valid():
    assert validation_errors(VALID) == []


@pytest.mark.parametrize(
    "changes, message",
    [
        ({"name": ""}, "Project name is required"),
        ({"name": "Web App"}, "Project name must contain only lowercase letters, numbers, and hyphens"),
        ({"name": "web_app"}, "Project name must contain only lowercase letters, numbers, and hyphens"),
        ({"git": {"remote": ""}}, "Git remote URL is required"),
        ({"git": {"remote": "https://x", "default_branch": ""}}, "Git default branch is required"),
        ({"environment": {}}, "Base image is required"),
        (
            {"environment": {"base_image": "debian:12", "services": [{"type": "redis"}, {"type": "redis"}]}},
            "Each service type may only be declared once",
        ),
    ],
)
def test_validation_errors(changes, message):
    assert validation_errors({**VALID, **changes}) == [message]


def test_validation_errors_collects_everything():
    assert len(validation_errors({})) == 3


def test_validate(projects):
    assert projects.validate(VALID) == {"valid": True, "errors": []}
    assert projects.validate({**VALID, "name": "Bad Name"})["valid"] is False


def test_create_and_get(projects):
    project = projects.create(ProjectCreate(**VALID, description="Frontend"))

    assert project.name == "web-app"
    assert project.description == "Frontend"
    assert project.environment.ports == [5173]
    assert project.git.remote == "git@github.com:acme/web-app.git"
    assert project.mounts == []
    assert project.claude is None

    assert projects.get(project.id).id == project.id
    assert projects.get_by_name("web-app").id == project.id
    assert [p.name for p in projects.list()] == ["web-app"]


def test_create_stores_json_config(projects):
    data = {
        **VALID,
        "environment": {"base_image": "debian:12", "services": [{"type": "postgres", "version": "15"}]},
        "mounts": [{"source": "~/.npmrc", "target": "/root/.npmrc", "readonly": True}],
        "claude": {"claude_md": "# Notes"},
    }
    project = projects.create(ProjectCreate(**data))

    assert project.environment_config["services"][0]["type"] == "postgres"
    assert project.mounts_config == [{"source": "~/.npmrc", "target": "/root/.npmrc", "readonly": True}]
    assert project.claude.claude_md == "# Notes"


def test_create_rejects_invalid(projects):
    with pytest.raises(ValidationError, match="lowercase"):
        projects.create(ProjectCreate(**{**VALID, "name": "Web App"}))


def test_create_rejects_duplicate_name(projects):
    projects.create(ProjectCreate(**VALID))

    with pytest.raises(ValidationError, match="already exists"):
        projects.create(ProjectCreate(**VALID))


def test_get_missing(projects):
    with pytest.raises(NotFoundError):
        projects.get("missing")
    with pytest.raises(NotFoundError):
        projects.get_by_name("missing")


def test_update_partial(projects):
    project = projects.create(ProjectCreate(**VALID, description="old"))

    updated = projects.update(project.id, ProjectUpdate(description="new"))

    assert updated.description == "new"
    assert updated.environment_config == project.environment_config
    assert updated.git_config == project.git_config


def test_update_environment(projects):
    project = projects.create(ProjectCreate(**VALID))

    updated = projects.update(project.id, ProjectUpdate(environment={"base_image": "debian:12", "packages": ["vim"]}))

    assert updated.environment.base_image == "debian:12"
    assert updated.environment.packages == ["vim"]


def test_update_rejects_invalid(projects):
    project = projects.create(ProjectCreate(**VALID))

    with pytest.raises(ValidationError):
        projects.update(project.id, ProjectUpdate(git={"remote": ""}))


def test_update_missing(projects):
    with pytest.raises(NotFoundError):
        projects.update("missing", ProjectUpdate(description="x"))


def test_delete(projects, store):
    project = projects.create(ProjectCreate(**VALID))

    projects.delete(project.id)

    assert store.find_project(project.id) is None


def test_delete_refuses_with_sessions(projects, store):
    project = projects.create(ProjectCreate(**VALID))
    store.create_session(project_id=project.id, name="session")

    with pytest.raises(ValidationError, match="1 sessions"):
        projects.delete(project.id)
    assert store.find_project(project.id) is not None
