"""Executable entrypoint for the relay service."""

from __future__ import annotations

import logging

import uvicorn

from config import relay_config


def _init_logging(level_name: str) -> None:
    level = getattr(logging, level_name.upper(), logging.INFO)
    fmt = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"
    logging.basicConfig(level=level, format=fmt)
    for name in ("tgrelay", "uvicorn", "uvicorn.access"):
        logging.getLogger(name).setLevel(level)


def main() -> None:
    cfg = relay_config()
    _init_logging(cfg.log_level)
    logging.getLogger("tgrelay").info(
        "stage=listen host=%s port=%s auth_root=%s", cfg.host, cfg.port, cfg.auth_root
    )
    uvicorn.run(
        "tgrelay.api:create_app",
        host=cfg.host,
        port=cfg.port,
        factory=True,
        workers=1,
    )


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    main()
