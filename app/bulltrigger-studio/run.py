#!/usr/bin/env python3
import os
import subprocess
import sys
from pathlib import Path


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() == "true"


def _should_autostart(name: str, debug: bool) -> bool:
    default = os.getenv("CELERY_AUTOSTART", "true")
    if os.getenv(name, default).strip().lower() != "true":
        return False
    # The reloader parent process must not spawn a second worker.
    if debug and os.getenv("WERKZEUG_RUN_MAIN") != "true":
        return False
    return True


def _runtime_env(src_path: Path) -> dict[str, str]:
    env = os.environ.copy()
    env["PYTHONPATH"] = f"{src_path}{os.pathsep}{env.get('PYTHONPATH', '')}".strip(
        os.pathsep
    )
    return env


def _start_celery(
    role: str,
    extra_args: list[str],
    src_path: Path,
    repo_root: Path,
) -> subprocess.Popen:
    loglevel = os.getenv(f"CELERY_{role.upper()}_LOGLEVEL", "info")
    command = [
        sys.executable,
        "-m",
        "celery",
        "-A",
        "services.celery_app:celery_app",
        role,
        "--loglevel",
        loglevel,
        *extra_args,
    ]
    return subprocess.Popen(command, cwd=repo_root, env=_runtime_env(src_path))


def _start_background(src_path: Path, repo_root: Path, debug: bool) -> list[subprocess.Popen]:
    processes = []
    if _should_autostart("CELERY_WORKER_AUTOSTART", debug):
        concurrency = os.getenv("CELERY_WORKER_CONCURRENCY", "4")
        processes.append(
            _start_celery("worker", ["--concurrency", concurrency], src_path, repo_root)
        )
    if _should_autostart("CELERY_BEAT_AUTOSTART", debug):
        data_dir = Path(os.getenv("BULLTRIGGER_DATA_DIR", repo_root / "data"))
        data_dir.mkdir(parents=True, exist_ok=True)
        processes.append(
            _start_celery(
                "beat",
                [
                    "--schedule",
                    str(data_dir / "celerybeat-schedule"),
                    "--pidfile",
                    str(data_dir / "celerybeat.pid"),
                ],
                src_path,
                repo_root,
            )
        )
    return processes


def _stop(processes: list[subprocess.Popen]) -> None:
    for process in processes:
        process.terminate()
        try:
            process.wait(timeout=10)
        except subprocess.TimeoutExpired:
            process.kill()


def main() -> int:
    repo_root = Path(__file__).resolve().parents[2]
    src_path = repo_root / "app" / "bulltrigger-studio" / "src"
    sys.path.insert(0, str(src_path))

    os.chdir(repo_root)

    debug = _env_flag("FLASK_DEBUG")
    processes = _start_background(src_path, repo_root, debug)
    try:
        if _env_flag("BULLTRIGGER_USE_GUNICORN") and not debug:
            config_path = src_path / "web" / "gunicorn_config.py"
            return subprocess.call(
                [
                    sys.executable,
                    "-m",
                    "gunicorn",
                    "--config",
                    str(config_path),
                    "web.app:create_app()",
                ],
                cwd=repo_root,
                env=_runtime_env(src_path),
            )

        from web.app import create_app

        app = create_app()
        host = os.getenv("FLASK_HOST", "0.0.0.0")
        port = int(os.getenv("FLASK_PORT", "5080"))
        app.run(host=host, port=port, debug=debug)
    finally:
        _stop(processes)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
