import os
import tempfile

# Settings are read at import time, so the environment is prepared first
_TMP = tempfile.mkdtemp(prefix="modelstudio-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TMP}/modelstudio.db"
os.environ["ARTIFACT_STORE_PATH"] = os.path.join(_TMP, "artifacts")
os.environ["IMPORT_DIR"] = os.path.join(_TMP, "imports")
os.environ["TRAINER_BACKEND"] = "local"
os.environ["PREDICTOR_BACKEND"] = "local"
os.environ["INTERNAL_API_KEY"] = ""
os.makedirs(os.environ["IMPORT_DIR"], exist_ok=True)

import numpy as np
import pytest

from modelstudio.artifacts.local_store import LocalArtifactStore
from modelstudio.db.postgres import build_engine, build_session_factory, create_tables
from modelstudio.models.registry import ModelRegistry
from modelstudio.models.repository import SqlModelRepository
from modelstudio.training.trainers import LocalTrainer


def make_classification_rows(n=100, seed=0):
    rng = np.random.default_rng(seed)
    rows = []
    for _ in range(n):
        a, b = rng.uniform(0, 10, size=2)
        rows.append({"a": float(a), "b": float(b), "y": int(a + b > 10)})
    return rows


def make_regression_rows(n=100, seed=1):
    rng = np.random.default_rng(seed)
    rows = []
    for _ in range(n):
        a, b = rng.uniform(0, 10, size=2)
        rows.append({"a": float(a), "b": float(b), "y": float(3 * a - 2 * b + rng.normal(0, 0.5))})
    return rows


@pytest.fixture
def classification_rows():
    return make_classification_rows()


@pytest.fixture
def regression_rows():
    return make_regression_rows()


@pytest.fixture
async def registry(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path}/registry.db")
    await create_tables(engine)
    import_dir = tmp_path / "imports"
    import_dir.mkdir()
    reg = ModelRegistry(
        repository=SqlModelRepository(build_session_factory(engine)),
        store=LocalArtifactStore(str(tmp_path / "artifacts")),
        trainer=LocalTrainer(),
        import_dir=str(import_dir),
    )
    yield reg
    await reg.stop()
    await engine.dispose()
