from tortoise import fields, models


class Company(models.Model):
    """
    A company known to the ingestion service. Read-only for the crawler.
    """
    id = fields.IntField(pk=True)
    ticker = fields.CharField(max_length=16, null=True, index=True)
    name = fields.CharField(max_length=512, null=True)
    domain = fields.CharField(max_length=255, null=True)
    careers_hint_url = fields.CharField(max_length=2048, null=True)
    created_at = fields.DatetimeField(auto_now_add=True)

    class Meta:
        table = "companies"

    def __str__(self):
        return f"{self.ticker or self.id} ({self.domain or 'no domain'})"
