"""Nox sessions for tests, linting and dependency checks."""

import nox

nox.options.sessions = ["tests", "lint"]
nox.options.reuse_existing_virtualenvs = True


@nox.session
def tests(session: nox.Session) -> None:
    """Run the test suite on CPU."""
    session.install(".[test]")
    session.run("pytest", *session.posargs, env={"JAX_PLATFORMS": "cpu"})


@nox.session
def lint(session: nox.Session) -> None:
    """Check formatting and lint rules."""
    session.install("ruff")
    session.run("ruff", "check", "src", "tests", "noxfile.py")
    session.run("ruff", "format", "--check", "src", "tests", "noxfile.py")


@nox.session
def test_deps(session: nox.Session) -> None:
    """Test that the base install pulls in every runtime dependency."""
    session.install(".")
    session.run(
        "python",
        "-c",
        "import flax.nnx; "
        "import jax; "
        "import numpy; "
        "import scipy.signal; "
        "import soundfile; "
        "from safetensors import safe_open; "
        "from whisper_engine import WhisperEngine; "
        "print('Base install OK')",
    )


@nox.session
def test_cli(session: nox.Session) -> None:
    """Test that the console script is installed."""
    session.install(".")
    session.run("whisper-engine", "--help")
