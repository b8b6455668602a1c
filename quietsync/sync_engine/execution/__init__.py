"""Execution pipeline for the sync engine.

This package contains the components of one sync run:

- **handshake**: Identity validation (latent collision, confirmed mismatch) and repo-name disambiguation
- **diff**: Incremental hint-driven Merkle diff (server hints -> ChangeSet)
- **upload**: File upload with encrypted ancestor chains, batch finalization
- **engine**: Run orchestration (handshake -> validate -> diff -> upload -> finalize)
"""
