# concessions/apps.py

from django.apps import AppConfig


class ConcessionsConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "concessions"
    verbose_name = "Fee Concessions"

    def ready(self):
        import concessions.signals  # noqa: F401
