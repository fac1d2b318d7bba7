from django.apps import AppConfig


class LabResultsConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'labresults'
    verbose_name = 'Lab result ingest pipeline'
