import os
from typing import Any, Dict

import uvicorn


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except ValueError:
        return default


def _ssl_options() -> Dict[str, Any]:
    mapping = {
        "ssl_certfile": "SSL_CERTFILE",
        "ssl_keyfile": "SSL_KEYFILE",
        "ssl_ca_certs": "SSL_CA_CERTS",
        "ssl_keyfile_password": "SSL_KEYFILE_PASSWORD",
    }
    return {option: os.getenv(env) for option, env in mapping.items() if os.getenv(env)}


def _websocket_options() -> Dict[str, Any]:
    # Frames above the gateway limit are rejected by the gateway with an
    # error event; the transport cap only guards against abuse.
    max_frame = int(_env_float("REALTIME_PAYLOAD_MAX_BYTES", 8192))
    return {
        "ws_max_size": max(max_frame * 4, 65536),
        "ws_ping_interval": _env_float("WS_PING_INTERVAL_SECONDS", 20.0),
        "ws_ping_timeout": _env_float("WS_PING_TIMEOUT_SECONDS", 20.0),
    }


def main() -> None:
    # Room membership and presence counts live in process memory, so the
    # realtime service runs as a single worker.
    uvicorn.run(
        "carechat.main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        reload=_env_flag("RELOAD"),
        log_level=os.getenv("LOG_LEVEL", "info"),
        proxy_headers=True,
        forwarded_allow_ips=os.getenv("FORWARDED_ALLOW_IPS", "*"),
        workers=1,
        **_websocket_options(),
        **_ssl_options(),
    )


if __name__ == "__main__":
    main()
