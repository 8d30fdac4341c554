from menu_extraction.config.settings import ExtractionSettings, get_settings

__all__ = ["ExtractionSettings", "get_settings"]
