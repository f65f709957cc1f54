"""
ModelRepository: persistence for model records and their version lineage.
"""

import logging
from typing import Any, Dict, List, Optional, Protocol, Tuple, runtime_checkable

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from modelstudio.common.exceptions import ModelExistsError, ModelNotFoundError
from modelstudio.db.models import MLModel, MLModelVersion

logger = logging.getLogger(__name__)

# Record fields a caller may patch directly
EDITABLE_FIELDS = ("name", "dataset_name", "model_type")

# Fields copied from the active version onto the record
_VERSION_FIELDS = ("algorithm", "parameters", "accuracy", "metrics")


@runtime_checkable
class ModelRepository(Protocol):
    async def create_model(self, fields: Dict[str, Any], version: Dict[str, Any]) -> Tuple[MLModel, MLModelVersion]:
        ...

    async def get_model(self, model_id: str) -> Optional[MLModel]:
        ...

    async def list_models(self, dataset_name: Optional[str] = None, model_type: Optional[str] = None) -> List[MLModel]:
        ...

    async def update_model(self, model_id: str, patch: Dict[str, Any]) -> Optional[MLModel]:
        ...

    async def delete_model(self, model_id: str) -> bool:
        ...

    async def list_versions(self, model_id: str) -> List[MLModelVersion]:
        ...

    async def get_active_version(self, model_id: str) -> Optional[MLModelVersion]:
        ...

    async def add_version(
        self, model_id: str, version: Dict[str, Any], is_trained: bool = True
    ) -> Tuple[MLModel, MLModelVersion]:
        ...

    async def activate_version(self, model_id: str, version_id: str) -> Optional[Tuple[MLModel, MLModelVersion]]:
        ...


class SqlModelRepository:
    """SQLAlchemy-backed repository; each method runs in its own transaction."""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def create_model(self, fields, version):
        async with self.session_factory() as session:
            model = MLModel(**fields)
            v = MLModelVersion(
                model_id=fields["id"],
                version_number=1,
                version_label="v1",
                is_active=True,
                **version,
            )
            try:
                session.add(model)
                await session.flush()
                session.add(v)
                await session.commit()
            except IntegrityError as e:
                # Another writer created the same id first
                await session.rollback()
                raise ModelExistsError(fields["id"]) from e

        logger.info(f"Stored model {model.id} ({model.algorithm}) as v1")
        return model, v

    async def get_model(self, model_id):
        async with self.session_factory() as session:
            return await session.get(MLModel, model_id)

    async def list_models(self, dataset_name=None, model_type=None):
        async with self.session_factory() as session:
            stmt = select(MLModel)
            if dataset_name is not None:
                stmt = stmt.where(MLModel.dataset_name == dataset_name)
            if model_type is not None:
                stmt = stmt.where(MLModel.model_type == model_type)
            result = await session.execute(stmt.order_by(MLModel.created_at.desc()))
            return list(result.scalars().all())

    async def update_model(self, model_id, patch):
        async with self.session_factory() as session:
            model = await session.get(MLModel, model_id)
            if model is None:
                return None
            for key, value in patch.items():
                if key in EDITABLE_FIELDS:
                    setattr(model, key, value)
            await session.commit()
            return model

    async def delete_model(self, model_id):
        async with self.session_factory() as session:
            model = await session.get(MLModel, model_id)
            if model is None:
                return False
            # SQLite does not enforce ON DELETE CASCADE without a pragma
            await session.execute(delete(MLModelVersion).where(MLModelVersion.model_id == model_id))
            await session.delete(model)
            await session.commit()
        logger.info(f"Deleted model {model_id}")
        return True

    async def list_versions(self, model_id):
        async with self.session_factory() as session:
            result = await session.execute(
                select(MLModelVersion)
                .where(MLModelVersion.model_id == model_id)
                .order_by(MLModelVersion.version_number)
            )
            return list(result.scalars().all())

    async def get_active_version(self, model_id):
        async with self.session_factory() as session:
            result = await session.execute(
                select(MLModelVersion).where(
                    MLModelVersion.model_id == model_id,
                    MLModelVersion.is_active == True,  # noqa: E712
                )
            )
            return result.scalars().first()

    async def add_version(self, model_id, version, is_trained=True):
        """Append the next version, make it the only active one and copy it onto the record."""
        async with self.session_factory() as session:
            model = await session.get(MLModel, model_id)
            if model is None:
                raise ModelNotFoundError(model_id)

            current = await session.execute(
                select(func.max(MLModelVersion.version_number)).where(MLModelVersion.model_id == model_id)
            )
            number = (current.scalar() or 0) + 1

            await self._deactivate_all(session, model_id)
            v = MLModelVersion(
                model_id=model_id,
                version_number=number,
                version_label=f"v{number}",
                is_active=True,
                **version,
            )
            session.add(v)
            self._copy_version(model, v)
            model.is_trained = is_trained
            await session.commit()

        logger.info(f"Stored model {model_id} v{number} (accuracy={v.accuracy:.4f})")
        return model, v

    async def activate_version(self, model_id, version_id):
        async with self.session_factory() as session:
            model = await session.get(MLModel, model_id)
            v = await session.get(MLModelVersion, version_id)
            if model is None or v is None or v.model_id != model_id:
                return None

            await self._deactivate_all(session, model_id)
            v.is_active = True
            self._copy_version(model, v)
            await session.commit()

        logger.info(f"Activated model {model_id} {v.version_label}")
        return model, v

    @staticmethod
    async def _deactivate_all(session: AsyncSession, model_id: str) -> None:
        await session.execute(
            update(MLModelVersion)
            .where(MLModelVersion.model_id == model_id)
            .values(is_active=False)
        )

    @staticmethod
    def _copy_version(model: MLModel, v: MLModelVersion) -> None:
        for key in _VERSION_FIELDS:
            setattr(model, key, getattr(v, key))
