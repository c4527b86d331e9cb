from tortoise import fields, models


class DiscoveredSitemap(models.Model):
    id = fields.IntField(pk=True)

    company_id = fields.IntField(index=True)
    url = fields.CharField(max_length=2048)
    fetched_at = fields.DatetimeField()
    # new URLs this document contributed, not the cumulative total
    url_count = fields.IntField(default=0)

    class Meta:
        table = "discovered_sitemaps"
        unique_together = (("company_id", "url"),)
