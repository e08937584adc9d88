"""
Library facade for DocuSight.
"""

from .library import MediaLibrary

__all__ = ['MediaLibrary']
