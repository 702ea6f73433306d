import importlib


def _read_pyproject_version() -> str:
    import re
    from pathlib import Path

    txt = (Path(__file__).resolve().parents[1] / "pyproject.toml").read_text(encoding="utf-8")
    m = re.search(r"^version\s*=\s*\"([^\"]+)\"\s*$", txt, flags=re.MULTILINE)
    assert m, "Could not locate [project].version in pyproject.toml"
    return m.group(1)


def test_convenience_imports_work():
    import toolspec_gateway

    # Access via attribute (lazy import)
    assert hasattr(toolspec_gateway, "create_app")
    assert hasattr(toolspec_gateway, "ToolSpecStore")

    from toolspec_gateway import GatewayConfig, InstallManager, validate_submission  # noqa: F401

    importlib.reload(toolspec_gateway)


def test_agent_exports():
    from toolspec_agent import build_submission, canonicalize, partition  # noqa: F401

    assert canonicalize("exec_command") == "bash"


def test_version_matches_pyproject():
    import toolspec_gateway

    assert toolspec_gateway.__version__ == _read_pyproject_version()
