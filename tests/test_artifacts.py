import pytest

from modelstudio.artifacts.local_store import BundleCache, LocalArtifactStore
from modelstudio.common.exceptions import BackendError


@pytest.fixture
def store(tmp_path):
    return LocalArtifactStore(str(tmp_path / "artifacts"))


def test_bundle_layout_and_delete(store, tmp_path):
    path = store.save_bundle("m1", "v1", {"weights": [1, 2, 3]})
    assert path.endswith("m1/v1/bundle.joblib")
    assert store.load_bundle(path) == {"weights": [1, 2, 3]}

    store.save_training_data("m1", [{"a": 1, "y": 0}])
    assert store.load_training_data("m1") == [{"a": 1, "y": 0}]

    store.delete_bundle(path)
    assert not (tmp_path / "artifacts" / "m1" / "v1").exists()
    with pytest.raises(BackendError):
        store.load_bundle(path)

    store.delete_training_data("m1")
    assert store.load_training_data("m1") is None
    assert not (tmp_path / "artifacts" / "m1").exists()

    store.save_training_data("m1", [{"a": 1, "y": 0}])
    assert store.delete("m1") is True
    assert store.load_training_data("m1") is None
    assert store.delete("m1") is False


def test_bundle_cache_evicts_least_recently_used(store):
    paths = [store.save_bundle(f"m{i}", "v1", i) for i in range(3)]
    cache = BundleCache(store, max_loaded=2)

    assert cache.get(paths[0]) == 0
    assert cache.get(paths[1]) == 1
    cache.get(paths[0])
    assert cache.get(paths[2]) == 2
    assert cache.loaded_count == 2

    # m1 was evicted; deleting its file shows the next get goes back to the store
    store.delete("m1")
    with pytest.raises(BackendError):
        cache.get(paths[1])
    assert cache.get(paths[0]) == 0


def test_bundle_cache_discard(store):
    path = store.save_bundle("m1", "v1", "bundle")
    cache = BundleCache(store)
    cache.get(path)
    cache.discard(path)
    cache.discard(None)
    assert cache.loaded_count == 0
