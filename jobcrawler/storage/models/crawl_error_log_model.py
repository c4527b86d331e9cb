from tortoise import fields, models


class CrawlErrorLog(models.Model):
    """
    Unexpected failures raised while crawling a company.
    """
    id = fields.IntField(pk=True)

    company_id = fields.IntField(null=True, index=True)
    url = fields.CharField(max_length=2048, null=True)
    reason_code = fields.CharField(max_length=32, index=True)
    error_message = fields.TextField(null=True)
    timestamp = fields.DatetimeField(auto_now_add=True)
    worker_id = fields.CharField(max_length=64, null=True)

    class Meta:
        table = "crawl_error_logs"
        indexes = ("company_id", "timestamp")

    async def save(self, *args, **kwargs):  # type: ignore[override]
        if self.error_message and len(self.error_message) > 512:
            self.error_message = self.error_message[:512]
        await super().save(*args, **kwargs)
