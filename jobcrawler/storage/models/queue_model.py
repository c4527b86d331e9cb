from tortoise import fields, models


class CrawlQueueEntry(models.Model):
    """
    One row per company: the durable crawl cadence ledger.

    The queue manager talks to this table with raw SQL through asyncpg; the
    model exists so the schema is generated together with the rest.
    """
    company_id = fields.IntField(pk=True, generated=False)

    next_run_at = fields.DatetimeField(index=True)
    locked_until = fields.DatetimeField(null=True, index=True)
    lock_owner = fields.CharField(max_length=128, null=True)
    lock_count = fields.IntField(default=0)

    last_started_at = fields.DatetimeField(null=True)
    last_finished_at = fields.DatetimeField(null=True)
    last_success_at = fields.DatetimeField(null=True)
    last_error = fields.CharField(max_length=500, null=True)

    consecutive_failures = fields.IntField(default=0)
    total_runs = fields.IntField(default=0)
    total_successes = fields.IntField(default=0)
    total_failures = fields.IntField(default=0)

    updated_at = fields.DatetimeField(auto_now=True)

    class Meta:
        table = "crawl_queue"
