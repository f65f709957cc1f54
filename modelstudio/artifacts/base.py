"""
ArtifactStore protocol: where fitted bundles and the data they were
trained on are kept.

LocalArtifactStore writes to the filesystem; an object-store backend only
has to provide the same methods.
"""

from typing import Any, Dict, List, Optional, Protocol, runtime_checkable


@runtime_checkable
class ArtifactStore(Protocol):
    def save_bundle(self, model_id: str, version: str, bundle: Any) -> str:
        """Persist a fitted bundle for a model version. Returns the storage path/key."""
        ...

    def load_bundle(self, path: str) -> Any:
        """Load a bundle previously returned by save_bundle."""
        ...

    def delete_bundle(self, path: str) -> None:
        """Remove one version's bundle, e.g. after a failed registry write."""
        ...

    def save_training_data(self, model_id: str, data: List[Dict[str, Any]]) -> str:
        """Keep the rows a model was trained on so it can be fine-tuned later."""
        ...

    def load_training_data(self, model_id: str) -> Optional[List[Dict[str, Any]]]:
        ...

    def delete_training_data(self, model_id: str) -> None:
        ...

    def delete(self, model_id: str) -> bool:
        """Delete every artifact of a model."""
        ...
