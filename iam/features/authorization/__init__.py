"""
Authorization feature module.

Roles bundle (resource, action) policies; subjects receive roles and direct
policies. Every grant is mirrored into a flat (subject, policy map key) index
so that access checks are a single indexed lookup.
"""
