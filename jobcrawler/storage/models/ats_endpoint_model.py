from tortoise import fields, models


class AtsEndpoint(models.Model):
    """
    Canonical ATS board endpoints, consumed by the feed adapters.
    """
    id = fields.IntField(pk=True)

    company_id = fields.IntField(index=True)
    vendor = fields.CharField(max_length=32, index=True)
    endpoint_url = fields.CharField(max_length=2048)
    # lowercase endpoint_url, the dedup key
    endpoint_key = fields.CharField(max_length=2048)
    detection_method = fields.CharField(max_length=32)
    source_url = fields.CharField(max_length=2048, null=True)

    first_seen_at = fields.DatetimeField(auto_now_add=True)
    last_seen_at = fields.DatetimeField(null=True)

    class Meta:
        table = "ats_endpoints"
        unique_together = (("company_id", "vendor", "endpoint_key"),)

    def __str__(self):
        return f"{self.vendor} {self.endpoint_url}"
