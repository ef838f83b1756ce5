"""
Seal Relayer Package

Core imports are lazily loaded so the codec can be used without the ledger
stack. For direct module access, import from submodules:

    from sealrelay.protocol import compute_seal_hash, decode_envelope
    from sealrelay.engine import RelayerEngine
    from sealrelay.exceptions import AlreadyProcessed
"""

# Lazy imports to avoid loading everything at package import
def __getattr__(name):
    """Lazy module loading."""
    if name == 'RelayerEngine':
        from .engine import RelayerEngine
        return RelayerEngine
    elif name == 'load_config':
        from .config import load_config
        return load_config
    elif name == 'compute_seal_hash':
        from .protocol import compute_seal_hash
        return compute_seal_hash
    elif name == 'WorkItem':
        from .types import WorkItem
        return WorkItem
    raise AttributeError(f"module 'sealrelay' has no attribute {name!r}")

__all__ = ['RelayerEngine', 'load_config', 'compute_seal_hash', 'WorkItem']
