import textwrap

import pytest  # type: ignore[import-not-found]


@pytest.fixture(autouse=True)
def _isolated_broker_env(monkeypatch):
    # las variables del entorno de desarrollo no deben filtrarse a los tests
    for name in ("RABBITMQ_URI", "RABBITMQ_VHOST", "CONFIG_PATH", "LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def write_ini(tmp_path):
    """Escribe un config.ini temporal y devuelve su path como string."""

    def _write(content: str, name: str = "config.ini") -> str:
        path = tmp_path / name
        path.write_text(textwrap.dedent(content))
        return str(path)

    return _write
