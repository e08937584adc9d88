"""
Identity resolution across the library.
"""

from .resolver import IdentityResolver, AssignmentEvent, face_signature, signature_is_finite

__all__ = ['IdentityResolver', 'AssignmentEvent', 'face_signature', 'signature_is_finite']
