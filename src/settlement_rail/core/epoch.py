"""
Epoch Validation for Usage Reports

An epoch is a monotonic, non-zero period counter. Every accepted report for
an entity must carry an epoch strictly above that entity's max reported
epoch, which rejects duplicates and out-of-order rollups in one check.

Batches are validated item by item against a staged view of the ledger, so
a repeated epoch inside the same batch is rejected as well.
"""

from typing import Any, Sequence
import structlog

from .errors import InvalidEpoch, InvalidUsageAmount

logger = structlog.get_logger()


class EpochValidator:
    """Validates (entity, epoch, usage) tuples before they reach the ledger."""

    def validate(self, entity_id: str, epoch: int, max_reported_epoch: int) -> None:
        """
        Check one epoch against the entity's current high-water mark.

        Raises:
            InvalidEpoch: epoch is zero, not an integer, or <= max_reported_epoch
        """
        if isinstance(epoch, bool) or not isinstance(epoch, int) or epoch <= 0:
            raise InvalidEpoch(entity_id, epoch, max_reported_epoch)

        if epoch <= max_reported_epoch:
            logger.warning(
                "epoch_rejected",
                entity_id=entity_id,
                epoch=epoch,
                max_reported_epoch=max_reported_epoch,
            )
            raise InvalidEpoch(entity_id, epoch, max_reported_epoch)

    def validate_units(self, entity_id: str, units: Any) -> int:
        """Unit counts are non-negative integers."""
        if isinstance(units, bool) or not isinstance(units, int) or units < 0:
            raise InvalidUsageAmount(
                f"Usage for {entity_id} must be a non-negative integer, got {units!r}"
            )
        return units

    def validate_batch_shape(self, *columns: Sequence[Any]) -> int:
        """
        Parallel batch columns must all have the same length.

        Returns the batch size.
        """
        lengths = {len(column) for column in columns}
        if len(lengths) > 1:
            raise InvalidUsageAmount(
                f"Batch columns have mismatched lengths: {[len(c) for c in columns]}"
            )
        return lengths.pop() if lengths else 0
