from __future__ import annotations

import argparse
import hashlib
import os
import subprocess
import sys
import venv
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parent
APP_DIR = PROJECT_ROOT / "app"
VENV_DIR = PROJECT_ROOT / ".venv"
REQUIREMENTS_FILE = APP_DIR / "requirements.txt"
REQUIREMENTS_MARKER = VENV_DIR / ".requirements.applied"
ASGI_APP = "api:app"


def venv_python() -> Path:
    if os.name == "nt":
        return VENV_DIR / "Scripts" / "python.exe"
    return VENV_DIR / "bin" / "python"


def ensure_virtualenv() -> None:
    if venv_python().exists():
        return
    print(f"[launcher] Creating virtual environment at {VENV_DIR}...")
    venv.EnvBuilder(with_pip=True, upgrade=False, clear=False).create(VENV_DIR)


def requirements_signature() -> str:
    if not REQUIREMENTS_FILE.exists():
        raise FileNotFoundError(f"Requirements file not found: {REQUIREMENTS_FILE}")
    return hashlib.sha256(REQUIREMENTS_FILE.read_bytes()).hexdigest()


def ensure_requirements(python_exec: Path) -> None:
    signature = requirements_signature()
    if REQUIREMENTS_MARKER.exists() and REQUIREMENTS_MARKER.read_text().strip() == signature:
        print("[launcher] Dependencies satisfied.")
        return
    print(f"[launcher] Installing dependencies from {REQUIREMENTS_FILE}...")
    subprocess.check_call([str(python_exec), "-m", "pip", "install", "--upgrade", "pip"])
    subprocess.check_call([str(python_exec), "-m", "pip", "install", "-r", str(REQUIREMENTS_FILE)])
    REQUIREMENTS_MARKER.write_text(signature)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Start the staff assignment API with uvicorn.")
    parser.add_argument("--host", default=os.environ.get("ASSIGNMENTS_HOST", "127.0.0.1"))
    parser.add_argument("--port", type=int, default=int(os.environ.get("ASSIGNMENTS_PORT", "8000")))
    parser.add_argument("--reload", action="store_true", help="Restart the server when source files change.")
    parser.add_argument(
        "--system-python",
        action="store_true",
        help="Use the current interpreter instead of the project virtualenv.",
    )
    return parser.parse_args(argv)


def uvicorn_command(python_exec: Path, args: argparse.Namespace) -> list[str]:
    command = [
        str(python_exec),
        "-m",
        "uvicorn",
        ASGI_APP,
        "--app-dir",
        str(APP_DIR),
        "--host",
        args.host,
        "--port",
        str(args.port),
    ]
    if args.reload:
        command.append("--reload")
    return command


def launch_app(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    if args.system_python:
        python_exec = Path(sys.executable)
    else:
        ensure_virtualenv()
        python_exec = venv_python()
        ensure_requirements(python_exec)
    print(f"[launcher] Serving {ASGI_APP} on http://{args.host}:{args.port}")
    return subprocess.call(uvicorn_command(python_exec, args))


if __name__ == "__main__":
    try:
        exit_code = launch_app()
    except subprocess.CalledProcessError as exc:
        print(f"[launcher] Command failed with exit code {exc.returncode}", file=sys.stderr)
        sys.exit(exc.returncode)
    except Exception as exc:
        print(f"[launcher] {exc}", file=sys.stderr)
        sys.exit(1)
    else:
        sys.exit(exit_code)
