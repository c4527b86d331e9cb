from tortoise import fields, models


class DiscoveredUrl(models.Model):
    """
    URLs found in a company's sitemaps, classified for the ATS probe step.
    """
    id = fields.IntField(pk=True)

    company_id = fields.IntField(index=True)
    url = fields.CharField(max_length=2048)
    url_type = fields.CharField(max_length=16, index=True)  # ATS_LANDING / CANDIDATE_JOB / OTHER
    lastmod = fields.CharField(max_length=64, null=True)

    first_seen_at = fields.DatetimeField(auto_now_add=True)
    last_seen_at = fields.DatetimeField(null=True)

    class Meta:
        table = "discovered_urls"
        unique_together = (("company_id", "url"),)
