"""Test configuration and fixtures."""

import logging
import tempfile

import pytest
import pytest_asyncio
from aiohttp.test_utils import TestServer

from tests.helpers import FakeRegistry, make_layer, write_oci_layout


@pytest.fixture(autouse=True)
def reset_package_logger():
    """Undo the CLI logging setup so caplog sees package records."""
    yield
    logger = logging.getLogger("check_image")
    logger.handlers.clear()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def isolated_tempdir(tmp_path, monkeypatch):
    """Point the tempfile module at an empty directory so leftovers are visible."""
    temp_root = tmp_path / "tmp"
    temp_root.mkdir()
    monkeypatch.setattr(tempfile, "tempdir", str(temp_root))
    return temp_root


@pytest.fixture
def secret_layers():
    """Two layers sharing one sensitive path plus one layer-specific file."""
    return [
        make_layer({"app/secrets.json": "{}", "app/main.py": "print()"}, dirs=["app"]),
        make_layer({"app/secrets.json": '{"changed": true}', "root/.ssh/id_rsa": "KEY"}, dirs=["root/.ssh"]),
    ]


@pytest.fixture
def oci_layout(tmp_path, secret_layers):
    """OCI layout with two tagged images; returns (path, [digest_v1, digest_v2])."""
    layout_dir = tmp_path / "layout"
    digests = write_oci_layout(
        layout_dir,
        [
            {"tag": "v1", "layers": secret_layers, "env": ["DB_PASSWORD=x", "PUBLIC_KEY=y"]},
            {"tag": ":v2", "layers": [make_layer({"etc/hostname": "box"})]},
        ],
    )
    return layout_dir, digests


@pytest_asyncio.fixture
async def fake_registry():
    """Running fake registry; returns (registry, "127.0.0.1:<port>")."""
    registry = FakeRegistry()
    server = TestServer(registry.app(), host="127.0.0.1")
    await server.start_server()
    try:
        yield registry, f"127.0.0.1:{server.port}"
    finally:
        await server.close()


@pytest.fixture
def docker_config(tmp_path, monkeypatch):
    """Empty Docker config directory exported as $DOCKER_CONFIG."""
    config_dir = tmp_path / "docker-config"
    config_dir.mkdir()
    monkeypatch.setenv("DOCKER_CONFIG", str(config_dir))
    return config_dir


def pytest_configure(config):
    """Configure pytest markers and settings."""
    config.addinivalue_line("markers", "integration: mark test as integration test requiring docker")
