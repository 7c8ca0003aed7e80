# src/key_lifecycle/utils/__init__.py

from .key_formatter import format_key_for_display, mask_secret

__all__ = ['format_key_for_display', 'mask_secret']
