from __future__ import annotations


class FulfillmentError(Exception):
    """Base class for errors that reject an operation without changing state."""

    kind = "error"
    retryable = False


class NotFound(FulfillmentError):
    kind = "not_found"

    def __init__(self, entity: str, entity_id: str):
        super().__init__(f"{entity} not found: {entity_id}")
        self.entity = entity
        self.entity_id = entity_id


class InvalidTransition(FulfillmentError):
    kind = "invalid_transition"


class DuplicateActiveTask(FulfillmentError):
    kind = "duplicate_active_task"

    def __init__(self, order_item_id: str, task_id: str):
        super().__init__(f"order item {order_item_id} already has active production task {task_id}")
        self.order_item_id = order_item_id
        self.task_id = task_id


class NegativeStock(FulfillmentError):
    kind = "negative_stock"


class PersistenceFailure(FulfillmentError):
    """Store unavailable or write conflict. Callers may retry."""

    kind = "persistence"
    retryable = True


class InvalidInput(FulfillmentError):
    """Malformed or out-of-range argument (non-numeric or non-positive quantity)."""

    kind = "invalid_input"
