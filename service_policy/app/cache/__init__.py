"""
Cache package for the Policy service.

Stores decisions in Redis keyed by a fingerprint of catalog version,
tenant, identity, resource, action and relevant context. PERMIT and DENY
use separate TTLs and a bounded local map takes over while Redis is down.
"""
