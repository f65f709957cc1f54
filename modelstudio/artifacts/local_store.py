"""
LocalArtifactStore: filesystem-backed implementation of ArtifactStore.

Layout:
    <base_dir>/<model_id>/training_data.json
    <base_dir>/<model_id>/<version>/bundle.joblib
"""

import json
import logging
import shutil
from collections import OrderedDict
from pathlib import Path
from typing import Any, Dict, List, Optional

import joblib

from modelstudio.common.exceptions import BackendError
from modelstudio.artifacts.base import ArtifactStore

logger = logging.getLogger(__name__)

BUNDLE_FILE = "bundle.joblib"
TRAINING_DATA_FILE = "training_data.json"


class LocalArtifactStore:
    def __init__(self, base_dir: str):
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def _model_dir(self, model_id: str) -> Path:
        return self.base_dir / str(model_id)

    def save_bundle(self, model_id: str, version: str, bundle: Any) -> str:
        version_dir = self._model_dir(model_id) / version
        version_dir.mkdir(parents=True, exist_ok=True)
        path = version_dir / BUNDLE_FILE
        joblib.dump(bundle, path)
        logger.info(f"Saved bundle for model {model_id} {version} to {path}")
        return str(path)

    def load_bundle(self, path: str) -> Any:
        if not Path(path).is_file():
            raise BackendError(f"Model artifact {path} is missing from the store")
        return joblib.load(path)

    def delete_bundle(self, path: str) -> None:
        bundle_path = Path(path)
        if bundle_path.is_file():
            bundle_path.unlink()
        version_dir = bundle_path.parent
        if version_dir.is_dir() and not any(version_dir.iterdir()):
            version_dir.rmdir()
        model_dir = version_dir.parent
        if model_dir.is_dir() and not any(model_dir.iterdir()):
            model_dir.rmdir()

    def save_training_data(self, model_id: str, data: List[Dict[str, Any]]) -> str:
        model_dir = self._model_dir(model_id)
        model_dir.mkdir(parents=True, exist_ok=True)
        path = model_dir / TRAINING_DATA_FILE
        path.write_text(json.dumps(data, default=str))
        return str(path)

    def load_training_data(self, model_id: str) -> Optional[List[Dict[str, Any]]]:
        path = self._model_dir(model_id) / TRAINING_DATA_FILE
        if not path.exists():
            return None
        return json.loads(path.read_text())

    def delete_training_data(self, model_id: str) -> None:
        path = self._model_dir(model_id) / TRAINING_DATA_FILE
        if path.is_file():
            path.unlink()
        model_dir = path.parent
        if model_dir.is_dir() and not any(model_dir.iterdir()):
            model_dir.rmdir()

    def delete(self, model_id: str) -> bool:
        model_dir = self._model_dir(model_id)
        if model_dir.exists():
            shutil.rmtree(model_dir)
            logger.info(f"Deleted artifacts for model {model_id}")
            return True
        return False


class BundleCache:
    """LRU cache of loaded bundles keyed by artifact path."""

    def __init__(self, store: ArtifactStore, max_loaded: int = 10):
        self._store = store
        self._loaded: "OrderedDict[str, Any]" = OrderedDict()
        self._max_loaded = max_loaded

    def get(self, path: str) -> Any:
        if path in self._loaded:
            self._loaded.move_to_end(path)
            return self._loaded[path]

        bundle = self._store.load_bundle(path)
        if len(self._loaded) >= self._max_loaded:
            evicted, _ = self._loaded.popitem(last=False)
            logger.info(f"Evicted bundle {evicted} from cache")
        self._loaded[path] = bundle
        return bundle

    def discard(self, path: Optional[str]) -> None:
        if path:
            self._loaded.pop(path, None)

    @property
    def loaded_count(self) -> int:
        return len(self._loaded)
