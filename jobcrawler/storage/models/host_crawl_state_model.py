from tortoise import fields, models


class HostCrawlState(models.Model):
    """
    Cooldown ledger for hosts that keep timing out or rate limiting us.
    """
    id = fields.IntField(pk=True)

    host = fields.CharField(max_length=255, unique=True)

    consecutive_failures = fields.IntField(default=0)
    last_error_category = fields.CharField(max_length=64, null=True)
    last_attempt_at = fields.DatetimeField(null=True)

    # no request may be sent before this instant
    next_allowed_at = fields.DatetimeField(null=True)

    class Meta:
        table = "host_crawl_state"
