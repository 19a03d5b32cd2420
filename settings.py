"""
Centralized configuration for the import and label services.
"""
from __future__ import annotations

import os
from typing import Any, Optional

from dotenv import load_dotenv

load_dotenv()


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(float(raw))
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


# ---- CRM ----
CRM_API_URL: str = (os.getenv("CRM_API_URL") or "https://api.g1.datacrazy.io/api/v1").rstrip("/")
CRM_API_TOKEN: str = os.getenv("CRM_API_TOKEN", "")
CRM_TIMEOUT_SECONDS: float = _env_float("CRM_TIMEOUT_SECONDS", 30.0)
CRM_CALLS_PER_MINUTE: int = _env_int("CRM_CALLS_PER_MINUTE", 55)

# ---- CSV import ----
IMPORT_DEFAULT_DELAY_MS: int = _env_int("IMPORT_DEFAULT_DELAY_MS", 0)
IMPORT_MAX_UPLOAD_BYTES: int = _env_int("IMPORT_MAX_UPLOAD_BYTES", 50 * 1024 * 1024)
IMPORT_LOCK_TTL_SECONDS: int = _env_int("IMPORT_LOCK_TTL_SECONDS", 300)
IMPORT_SECONDS_PER_ROW: float = _env_float("IMPORT_SECONDS_PER_ROW", 1.5)
IMPORT_ERROR_TAIL: int = _env_int("IMPORT_ERROR_TAIL", 50)

# ---- Carrier (VIPP) ----
VIPP_API_URL: str = os.getenv("VIPP_API_URL") or "http://vpsrv.visualset.com.br/api/v1/middleware/PostarObjeto"
VIPP_PRINT_URL: str = (os.getenv("VIPP_PRINT_URL") or "https://vipp.visualset.com.br/vipp/remoto").rstrip("/")
VIPP_USUARIO: str = os.getenv("VIPP_USUARIO", "")
VIPP_SENHA: str = os.getenv("VIPP_SENHA", "")
VIPP_ID_PERFIL: str = os.getenv("VIPP_ID_PERFIL", "")
VIPP_SERVICO_ECT: str = os.getenv("VIPP_SERVICO_ECT", "")
VIPP_NR_CONTRATO: str = os.getenv("VIPP_NR_CONTRATO", "")
VIPP_COD_ADMINISTRATIVO: str = os.getenv("VIPP_COD_ADMINISTRATIVO", "")
VIPP_NR_CARTAO: str = os.getenv("VIPP_NR_CARTAO", "")
VIPP_TIMEOUT_SECONDS: float = _env_float("VIPP_TIMEOUT_SECONDS", 60.0)
LABEL_CARRIER_DELAY_MS: int = _env_int("LABEL_CARRIER_DELAY_MS", 1000)


def parse_delay_ms(value: Optional[Any], default: int = IMPORT_DEFAULT_DELAY_MS) -> int:
    """Coerce a user-supplied delay (form field, JSON) to non-negative milliseconds."""
    if value is None:
        return default
    text = str(value).strip()
    if not text:
        return default
    try:
        return max(0, int(float(text)))
    except ValueError:
        return default


def vipp_credentials_configured() -> bool:
    return bool(VIPP_USUARIO and VIPP_SENHA)
