"""Utility helpers for rdapx."""

from .validators import classify, is_valid_asn, is_valid_domain, is_valid_ip

__all__ = ["classify", "is_valid_asn", "is_valid_domain", "is_valid_ip"]
