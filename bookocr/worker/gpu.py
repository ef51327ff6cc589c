from __future__ import annotations

import shutil
import subprocess
from dataclasses import dataclass

from bookocr.core.errors import InferenceError


@dataclass
class GPUInfo:
    index: int
    name: str
    memory_total_mb: int


def list_gpus() -> list[GPUInfo]:
    if not shutil.which("nvidia-smi"):
        return []

    command = [
        "nvidia-smi",
        "--query-gpu=index,name,memory.total",
        "--format=csv,noheader,nounits",
    ]
    try:
        result = subprocess.run(command, capture_output=True, text=True, check=True)
    except (OSError, subprocess.CalledProcessError):
        return []

    gpus: list[GPUInfo] = []
    for line in result.stdout.strip().splitlines():
        parts = [p.strip() for p in line.split(",")]
        if len(parts) != 3 or not parts[0].isdigit():
            continue
        memory = int(parts[2]) if parts[2].isdigit() else 0
        gpus.append(GPUInfo(index=int(parts[0]), name=parts[1], memory_total_mb=memory))
    return gpus


def require_gpu() -> list[GPUInfo]:
    gpus = list_gpus()
    if not gpus:
        raise InferenceError("No visible NVIDIA GPU; the OCR container needs --gpus all")
    return gpus
