"""JSON schemas for diag-collector configuration files.

- collect.schema.json: collection run configuration (hosts, paths, job profiles)
"""
