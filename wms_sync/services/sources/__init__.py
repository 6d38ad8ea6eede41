from wms_sync.services.sources.base import ListResult, SourceAdapter, SourcePage, compute_signature
from wms_sync.services.sources.http import GenericWMSAdapter

ADAPTERS: dict[str, type[SourceAdapter]] = {
    GenericWMSAdapter.vendor: GenericWMSAdapter,
}


def get_source_adapter(vendor: str, **kwargs) -> SourceAdapter:
    try:
        adapter_cls = ADAPTERS[vendor]
    except KeyError as exc:
        raise ValueError(f"No source adapter registered for vendor {vendor!r}") from exc
    return adapter_cls(**kwargs)


__all__ = [
    "ADAPTERS",
    "GenericWMSAdapter",
    "ListResult",
    "SourceAdapter",
    "SourcePage",
    "compute_signature",
    "get_source_adapter",
]
