"""
Optimistic Locking Infrastructure
Version-based concurrency control to prevent lost updates on ledger rows
"""

import logging
from typing import Any, Dict
from sqlalchemy import update
from sqlalchemy.orm import Session

from utils.exception_handler import ConcurrentModificationError

logger = logging.getLogger(__name__)


class OptimisticLockManager:
    """
    Manager for optimistic locking operations
    Rows are addressed by a business key column and carry a `version` counter
    """

    def __init__(self, session: Session):
        self.session = session

    def versioned_update(
        self,
        model_class: Any,
        key_column: str,
        entity_id: str,
        updates: Dict[str, Any],
        current_version: int,
    ) -> int:
        """
        Perform version-controlled update

        Args:
            model_class: SQLAlchemy model class
            key_column: Name of the business key column (e.g. 'payment_id')
            entity_id: Business key value
            updates: Dictionary of field updates
            current_version: Version the caller read before modifying

        Returns:
            int: The new version stored on the row

        Raises:
            ConcurrentModificationError: If the row changed since it was read
        """
        new_version = current_version + 1
        stmt = update(model_class).where(
            getattr(model_class, key_column) == entity_id,
            model_class.version == current_version
        ).values({**updates, "version": new_version})

        result = self.session.execute(stmt)

        if result.rowcount == 0:
            logger.warning(
                f"🔒 Optimistic lock conflict: {model_class.__name__} {key_column}={entity_id} "
                f"expected_version={current_version}"
            )
            raise ConcurrentModificationError(model_class.__name__, entity_id, current_version)

        logger.debug(
            f"✅ Versioned update successful: {model_class.__name__} {key_column}={entity_id} "
            f"v{current_version} → v{new_version}"
        )
        return new_version
