"""
HTTP replay of queued operations.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from healthsync.core.network import NetworkClient, Request
from healthsync.errors import SyncConflictError, ValidationError
from healthsync.logging_config import get_logger

from .offline_queue import OperationKind, QueuedOperation

logger = get_logger(__name__)

ENDPOINTS: dict[str, str] = {
    "users": "users",
    "assessments": "assessments",
    "moods": "moods",
    "nutritionPlans": "nutrition-plans",
}

_METHODS = {
    OperationKind.CREATE: "POST",
    OperationKind.UPDATE: "PUT",
    OperationKind.DELETE: "DELETE",
}


class HttpOperationReplayer:
    """
    Sends a QueuedOperation to the REST API.

    create -> POST   {base}/{endpoint}
    update -> PUT    {base}/{endpoint}/{record_id}
    delete -> DELETE {base}/{endpoint}/{record_id}

    A 409 answer raises SyncConflictError carrying the server's copy; other
    4xx answers raise ValidationError. 5xx and transport failures come from
    the network client as retryable errors.
    """

    def __init__(
        self,
        network: NetworkClient,
        *,
        base_path: str = "/api",
        endpoints: dict[str, str] | None = None,
        timeout_ms: float | None = None,
        auth_token: Callable[[], str | None] | None = None,
    ):
        self.network = network
        self.base_path = base_path.rstrip("/")
        self.endpoints = dict(endpoints if endpoints is not None else ENDPOINTS)
        self.timeout_ms = timeout_ms
        self.auth_token = auth_token

    @property
    def collections(self) -> set[str]:
        return set(self.endpoints)

    def build_request(self, op: QueuedOperation) -> Request:
        endpoint = self.endpoints.get(op.target_collection)
        if endpoint is None:
            raise ValidationError(
                f"No endpoint for collection: {op.target_collection}",
                field="target_collection",
                suggestions=sorted(self.endpoints),
            )

        url = f"{self.base_path}/{endpoint}"
        if op.kind != OperationKind.CREATE:
            url = f"{url}/{op.record_id}"

        headers = {"content-type": "application/json"}
        token = self.auth_token() if self.auth_token else None
        if token:
            headers["authorization"] = f"Bearer {token}"

        return Request(
            url=url,
            method=_METHODS[op.kind],
            headers=headers,
            body=None if op.kind == OperationKind.DELETE else op.payload,
        )

    async def __call__(self, op: QueuedOperation) -> Any:
        request = self.build_request(op)
        response = await self.network.fetch(request, self.timeout_ms)

        if response.status == 409:
            raise SyncConflictError(
                f"Server rejected {op.kind.value} on {op.target_collection}: conflict",
                server_data=response.body,
                context={"operation_id": op.id, "status": 409},
            )
        if 400 <= response.status < 500:
            raise ValidationError(
                f"Server rejected {op.kind.value} on {op.target_collection} "
                f"with status {response.status}",
                context={"operation_id": op.id, "status": response.status},
            )

        logger.debug(
            "operation_replayed",
            id=op.id,
            method=request.method,
            url=request.url,
            status=response.status,
        )
        return response.body
