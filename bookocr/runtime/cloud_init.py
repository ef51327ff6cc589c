from __future__ import annotations

import os
import shlex

import yaml

from bookocr.core.config import Settings
from bookocr.runtime.cloud import lookup_secret_env


DOCKER_APT_SOURCE = {
    "source": "deb [arch=amd64] https://download.docker.com/linux/ubuntu $RELEASE stable",
    "keyid": "9DC858229FC7DD38854AE2D88D81803C0EBFCD88",
}

WORKER_ENV_PATH = "/etc/bookocr/worker.env"

PASSTHROUGH_ENV = ("AWS_ACCESS_KEY_ID", "AWS_SECRET_ACCESS_KEY", "AWS_SESSION_TOKEN")


def worker_environment(settings: Settings) -> dict[str, str]:
    env = {
        "OCR_PRODUCTION": "true",
        "OCR_STORAGE_BACKEND": "s3",
        "OCR_BUCKET_NAME": settings.bucket_name,
        "OCR_AWS_REGION": settings.aws_region,
        "OCR_CLOUD_PROVIDER": settings.cloud_provider,
        "OCR_WORKER_PORT": str(settings.worker_port),
        "OCR_WORKER_DOCKER_IMAGE": settings.worker_docker_image,
        "OCR_WORKER_DOCKER_WORKDIR": settings.worker_docker_workdir,
        "OCR_WORKER_SELF_ACTION": settings.worker_self_action,
        "OCR_WORKER_BUFFER_DIR": "/var/lib/bookocr/images_buffer",
        "OCR_LOG_DIR": "/var/log/bookocr",
    }
    api_key = settings.vultr_api_key or lookup_secret_env(settings.vultr_api_key_env)
    if api_key:
        env["OCR_VULTR_API_KEY"] = api_key
    for name in PASSTHROUGH_ENV:
        value = os.getenv(name)
        if value:
            env[name] = value
    return env


def build_user_data(settings: Settings) -> str:
    """Cloud-config that installs Docker and boots both worker programs."""
    env_lines = "".join(f"{key}={shlex.quote(value)}\n" for key, value in sorted(worker_environment(settings).items()))
    serve = f"set -a; . {WORKER_ENV_PATH}; set +a; exec bookocr worker-serve"
    run = f"set -a; . {WORKER_ENV_PATH}; set +a; exec bookocr worker-run"

    config = {
        "apt": {"sources": {"docker.list": DOCKER_APT_SOURCE}},
        "packages": ["docker-ce", "docker-ce-cli", "python3-pip"],
        "write_files": [
            {"path": WORKER_ENV_PATH, "permissions": "0600", "content": env_lines},
        ],
        "runcmd": [
            ["sh", "-c", settings.worker_install_command],
            ["systemd-run", "--unit", "bookocr-worker-serve", "sh", "-c", serve],
            ["systemd-run", "--unit", "bookocr-worker-run", "sh", "-c", run],
        ],
    }
    return "#cloud-config\n" + yaml.safe_dump(config, sort_keys=False, allow_unicode=True)
