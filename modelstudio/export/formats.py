"""
Model download formats.

json   - the model record plus ranked feature importance (no fitted state)
pkl    - pickle of {"metadata", "bundle"}
joblib - joblib dump of the same payload
"""

import io
import json
import logging
import pickle
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import joblib

from modelstudio.common.exceptions import NotTrainedError, UnsupportedFormatError

logger = logging.getLogger(__name__)

SUPPORTED_FORMATS = ("json", "pkl", "joblib")
BINARY_FORMATS = ("pkl", "joblib")


@dataclass
class ExportedModel:
    content: bytes
    media_type: str
    filename: str


def check_format(fmt: str) -> str:
    fmt = (fmt or "").lower().lstrip(".")
    if fmt not in SUPPORTED_FORMATS:
        raise UnsupportedFormatError(fmt, SUPPORTED_FORMATS)
    return fmt


def export_model(
    record: Dict[str, Any],
    bundle: Optional[Any],
    fmt: str,
    importance: Optional[List[Dict[str, Any]]] = None,
) -> ExportedModel:
    fmt = check_format(fmt)
    filename = f"{record['id']}.{fmt}"

    if fmt == "json":
        document = dict(record, featureImportance=importance or [])
        return ExportedModel(
            content=json.dumps(document, indent=2).encode(),
            media_type="application/json",
            filename=filename,
        )

    if bundle is None:
        raise NotTrainedError(record["id"])

    payload = {"metadata": record, "bundle": bundle}
    if fmt == "pkl":
        content = pickle.dumps(payload, protocol=pickle.HIGHEST_PROTOCOL)
    else:
        buffer = io.BytesIO()
        joblib.dump(payload, buffer)
        content = buffer.getvalue()

    logger.info(f"Exported model {record['id']} as {fmt} ({len(content)} bytes)")
    return ExportedModel(content=content, media_type="application/octet-stream", filename=filename)
