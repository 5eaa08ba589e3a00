"""
PostgreSQL repositories backed by the asyncpg pool in ``database``.

Settlement writes run inside ``conn.transaction()`` with the order and
payment rows locked ``FOR UPDATE`` so concurrent provider notifications for
the same order serialize.
"""

import json
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional
from uuid import UUID

import asyncpg

from database import Database
from pipeline.models import (
    Customer,
    ExternalWebhookLog,
    Order,
    OrderItem,
    OrderStatusHistory,
    OrderWithRelations,
    Payment,
    Subscriber,
    WebhookJob,
    WebhookJobStatus,
    WebhookLog,
    utcnow,
)
from pipeline.repositories import (
    IOrderRepository,
    IOrderTransaction,
    IWebhookRepository,
    build_stats,
)


def _row(record: asyncpg.Record, *json_fields: str) -> Dict[str, Any]:
    result = {k: str(v) if isinstance(v, UUID) else v for k, v in record.items()}
    for field in json_fields:
        if isinstance(result.get(field), str):
            result[field] = json.loads(result[field])
    return result


UPSERT_LEDGER = """
    INSERT INTO external_webhook_logs
    (id, webhook_id, source, payment_id, action, provider_status, payload, headers, success, error_msg, created_at)
    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
    ON CONFLICT (webhook_id) DO UPDATE SET
        provider_status = EXCLUDED.provider_status,
        payload = EXCLUDED.payload,
        headers = EXCLUDED.headers,
        success = EXCLUDED.success,
        error_msg = EXCLUDED.error_msg
"""


async def _upsert_ledger(conn: asyncpg.Connection, entry: ExternalWebhookLog) -> ExternalWebhookLog:
    await conn.execute(
        UPSERT_LEDGER,
        entry.id,
        entry.webhook_id,
        entry.source,
        entry.payment_id,
        entry.action,
        entry.provider_status,
        entry.payload,
        json.dumps(entry.headers),
        entry.success,
        entry.error_msg,
        entry.created_at,
    )
    return entry


# =============================================================================
# ORDERS
# =============================================================================

class PostgresOrderTransaction(IOrderTransaction):

    def __init__(self, conn: asyncpg.Connection):
        self._conn = conn

    async def get_order_for_update(self, order_id: str) -> Optional[Order]:
        row = await self._conn.fetchrow("SELECT * FROM orders WHERE id = $1 FOR UPDATE", order_id)
        return Order(**_row(row)) if row else None

    async def get_payment_for_update(self, payment_id: str) -> Optional[Payment]:
        row = await self._conn.fetchrow("SELECT * FROM payments WHERE id = $1 FOR UPDATE", payment_id)
        return Payment(**_row(row, "raw_data")) if row else None

    async def insert_payment(self, payment: Payment) -> Payment:
        await self._conn.execute(
            """
            INSERT INTO payments
            (id, order_id, provider_payment_id, status, method, amount, paid_at, raw_data, created_at, updated_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
            """,
            payment.id,
            payment.order_id,
            payment.provider_payment_id,
            payment.status,
            payment.method,
            payment.amount,
            payment.paid_at,
            json.dumps(payment.raw_data) if payment.raw_data is not None else None,
            payment.created_at,
            payment.updated_at,
        )
        return payment

    async def update_payment(self, payment: Payment) -> Payment:
        await self._conn.execute(
            """
            UPDATE payments
            SET status = $1, method = $2, amount = $3, paid_at = $4, raw_data = $5, updated_at = NOW()
            WHERE id = $6
            """,
            payment.status,
            payment.method,
            payment.amount,
            payment.paid_at,
            json.dumps(payment.raw_data) if payment.raw_data is not None else None,
            payment.id,
        )
        return payment

    async def update_order(self, order: Order) -> Order:
        await self._conn.execute(
            """
            UPDATE orders
            SET status = $1, paid_amount = $2, status_updated_at = $3, updated_at = NOW()
            WHERE id = $4
            """,
            order.status.value,
            order.paid_amount,
            order.status_updated_at,
            order.id,
        )
        return order

    async def append_history(self, entry: OrderStatusHistory) -> OrderStatusHistory:
        await self._conn.execute(
            """
            INSERT INTO order_status_history
            (id, order_id, previous_status, new_status, notes, created_at)
            VALUES ($1, $2, $3, $4, $5, $6)
            """,
            entry.id,
            entry.order_id,
            entry.previous_status.value if entry.previous_status else None,
            entry.new_status.value,
            entry.notes,
            entry.created_at,
        )
        return entry

    async def record_webhook_log_entry(self, entry: ExternalWebhookLog) -> ExternalWebhookLog:
        return await _upsert_ledger(self._conn, entry)


class PostgresOrderRepository(IOrderRepository):

    def __init__(self, db: Database):
        self._db = db

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[PostgresOrderTransaction]:
        async with self._db.acquire() as conn:
            async with conn.transaction():
                yield PostgresOrderTransaction(conn)

    async def create_order(self, order: Order, customer: Customer, items: list[OrderItem]) -> Order:
        async with self._db.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    """
                    INSERT INTO customers (id, name, email, phone)
                    VALUES ($1, $2, $3, $4)
                    ON CONFLICT (id) DO NOTHING
                    """,
                    customer.id, customer.name, customer.email, customer.phone,
                )
                await conn.execute(
                    """
                    INSERT INTO orders
                    (id, checkout_id, customer_id, status, tracking_session_id, created_at, updated_at)
                    VALUES ($1, $2, $3, $4, $5, $6, $7)
                    """,
                    order.id,
                    order.checkout_id,
                    order.customer_id,
                    order.status.value,
                    order.tracking_session_id,
                    order.created_at,
                    order.updated_at,
                )
                await conn.executemany(
                    """
                    INSERT INTO order_items
                    (id, order_id, product_id, quantity, is_order_bump, is_upsell)
                    VALUES ($1, $2, $3, $4, $5, $6)
                    """,
                    [
                        (i.id, order.id, i.product_id, i.quantity, i.is_order_bump, i.is_upsell)
                        for i in items
                    ],
                )
        return order

    async def get_order(self, order_id: str) -> Optional[Order]:
        row = await self._db.fetch_one("SELECT * FROM orders WHERE id = $1", order_id)
        return Order(**_row(row)) if row else None

    async def get_order_with_relations(self, order_id: str) -> Optional[OrderWithRelations]:
        async with self._db.acquire() as conn:
            order_row = await conn.fetchrow("SELECT * FROM orders WHERE id = $1", order_id)
            if not order_row:
                return None
            order = Order(**_row(order_row))
            customer_row = await conn.fetchrow("SELECT * FROM customers WHERE id = $1", order.customer_id)
            item_rows = await conn.fetch(
                """
                SELECT i.*, p.name AS product_name, p.price AS product_price
                FROM order_items i
                LEFT JOIN products p ON p.id = i.product_id
                WHERE i.order_id = $1
                """,
                order_id,
            )
            payment_row = await conn.fetchrow(
                "SELECT * FROM payments WHERE order_id = $1 ORDER BY created_at DESC LIMIT 1",
                order_id,
            )

        return OrderWithRelations(
            order=order,
            customer=Customer(**_row(customer_row)),
            items=[OrderItem(**_row(r)) for r in item_rows],
            payment=Payment(**_row(payment_row, "raw_data")) if payment_row else None,
        )

    async def get_payment_by_provider_id(self, provider_payment_id: str) -> Optional[Payment]:
        row = await self._db.fetch_one(
            "SELECT * FROM payments WHERE provider_payment_id = $1",
            provider_payment_id,
        )
        return Payment(**_row(row, "raw_data")) if row else None

    async def get_history(self, order_id: str) -> list[OrderStatusHistory]:
        rows = await self._db.fetch_all(
            "SELECT * FROM order_status_history WHERE order_id = $1 ORDER BY created_at",
            order_id,
        )
        return [OrderStatusHistory(**_row(r)) for r in rows]

    async def get_webhook_log_entry(self, webhook_id: str) -> Optional[ExternalWebhookLog]:
        row = await self._db.fetch_one(
            "SELECT * FROM external_webhook_logs WHERE webhook_id = $1",
            webhook_id,
        )
        return ExternalWebhookLog(**_row(row, "headers")) if row else None

    async def record_webhook_log_entry(self, entry: ExternalWebhookLog) -> ExternalWebhookLog:
        async with self._db.acquire() as conn:
            return await _upsert_ledger(conn, entry)


# =============================================================================
# WEBHOOKS
# =============================================================================

class PostgresWebhookRepository(IWebhookRepository):

    def __init__(self, db: Database):
        self._db = db

    async def list_active_subscribers(self, event: str) -> list[Subscriber]:
        rows = await self._db.fetch_all(
            """
            SELECT id, url, events, secret, description, active, deleted_at, created_at
            FROM webhooks
            WHERE active = TRUE AND deleted_at IS NULL AND $1 = ANY(events)
            """,
            event,
        )
        return [Subscriber(**_row(r)) for r in rows]

    async def get_subscriber(self, subscriber_id: str) -> Optional[Subscriber]:
        row = await self._db.fetch_one(
            """
            SELECT id, url, events, secret, description, active, deleted_at, created_at
            FROM webhooks WHERE id = $1
            """,
            subscriber_id,
        )
        return Subscriber(**_row(row)) if row else None

    async def append_delivery_log(self, entry: WebhookLog) -> WebhookLog:
        await self._db.execute(
            """
            INSERT INTO webhook_logs
            (id, webhook_id, event, payload, response, status_code, success, attempt, sent_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
            """,
            entry.id,
            entry.webhook_id,
            entry.event,
            json.dumps(entry.payload),
            entry.response,
            entry.status_code,
            entry.success,
            entry.attempt,
            entry.sent_at,
        )
        return entry

    async def get_delivery_log(self, log_id: str) -> Optional[WebhookLog]:
        row = await self._db.fetch_one("SELECT * FROM webhook_logs WHERE id = $1", log_id)
        return WebhookLog(**_row(row, "payload")) if row else None

    async def list_delivery_logs(
        self,
        webhook_id: Optional[str] = None,
        event: Optional[str] = None,
        success: Optional[bool] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[WebhookLog]:
        conditions = []
        params: list[Any] = []

        for column, value in (("webhook_id", webhook_id), ("event", event), ("success", success)):
            if value is not None:
                params.append(value)
                conditions.append(f"{column} = ${len(params)}")

        where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        params.extend([limit, offset])

        rows = await self._db.fetch_all(
            f"""
            SELECT * FROM webhook_logs
            {where_clause}
            ORDER BY sent_at DESC
            LIMIT ${len(params) - 1} OFFSET ${len(params)}
            """,
            *params,
        )
        return [WebhookLog(**_row(r, "payload")) for r in rows]

    async def delivery_stats(self, webhook_id: Optional[str] = None) -> dict:
        if webhook_id:
            row = await self._db.fetch_one(
                """
                SELECT COUNT(*) AS total, COUNT(*) FILTER (WHERE success) AS successful
                FROM webhook_logs WHERE webhook_id = $1
                """,
                webhook_id,
            )
        else:
            row = await self._db.fetch_one(
                "SELECT COUNT(*) AS total, COUNT(*) FILTER (WHERE success) AS successful FROM webhook_logs"
            )
        return build_stats(row["total"], row["successful"])

    async def create_job(self, job: WebhookJob) -> WebhookJob:
        await self._db.execute(
            """
            INSERT INTO webhook_jobs (id, order_id, job_type, job_id, status, created_at)
            VALUES ($1, $2, $3, $4, $5, $6)
            """,
            job.id, job.order_id, job.job_type, job.job_id, job.status.value, job.created_at,
        )
        return job

    async def get_job(self, job_id: str) -> Optional[WebhookJob]:
        row = await self._db.fetch_one("SELECT * FROM webhook_jobs WHERE job_id = $1", job_id)
        return WebhookJob(**_row(row)) if row else None

    async def list_active_jobs(self, order_id: str, job_type: str) -> list[WebhookJob]:
        rows = await self._db.fetch_all(
            """
            SELECT * FROM webhook_jobs
            WHERE order_id = $1 AND job_type = $2 AND status = 'active'
            """,
            order_id,
            job_type,
        )
        return [WebhookJob(**_row(r)) for r in rows]

    async def update_job_status(self, job_id: str, status: WebhookJobStatus) -> bool:
        result = await self._db.execute(
            """
            UPDATE webhook_jobs
            SET status = $1, completed_at = $2
            WHERE job_id = $3 AND status = 'active'
            """,
            status.value,
            utcnow() if status == WebhookJobStatus.COMPLETED else None,
            job_id,
        )
        return "UPDATE 1" in result
