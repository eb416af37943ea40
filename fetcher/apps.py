from django.apps import AppConfig


class FetcherConfig(AppConfig):
    name = 'fetcher'
    default_auto_field = 'django.db.models.BigAutoField'
