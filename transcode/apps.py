from django.apps import AppConfig


class TranscodeConfig(AppConfig):
    name = 'transcode'
    default_auto_field = 'django.db.models.BigAutoField'

    def ready(self):
        """Build the variant catalog once per process"""
        from transcode.service.config import load_transcode_settings
        from transcode.service.variants import VariantCatalog

        self.catalog = VariantCatalog.load(load_transcode_settings().enabled_variants)
