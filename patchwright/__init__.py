"""
patchwright turns a machine-generated change description into a signed,
checksummed bundle and applies it to a workspace as a single
rollback-capable transaction.
"""

__version__ = "0.1.0"
