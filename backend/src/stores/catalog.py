from __future__ import annotations

from backend.src.contracts.models import Store

# Store ids as used by the catalog source's ``storeIds`` query parameter.
DEFAULT_STORES: list[Store] = [
    Store(id="356", name="IKEA Milano San Giuliano", city="San Giuliano Milanese", region="Lombardia"),
    Store(id="024", name="IKEA Corsico", city="Corsico", region="Lombardia"),
    Store(id="388", name="IKEA Carugate", city="Carugate", region="Lombardia"),
    Store(id="260", name="IKEA Anagnina Roma", city="Roma", region="Lazio"),
    Store(id="324", name="IKEA Casalecchio", city="Casalecchio di Reno", region="Emilia-Romagna"),
    Store(id="398", name="IKEA Roncadelle", city="Roncadelle", region="Lombardia"),
    Store(id="330", name="IKEA Parma", city="Parma", region="Emilia-Romagna"),
    Store(id="299", name="IKEA Padova", city="Padova", region="Veneto"),
    Store(id="389", name="IKEA Torino", city="Torino", region="Piemonte"),
    Store(id="360", name="IKEA Bari", city="Bari", region="Puglia"),
    Store(id="332", name="IKEA Genova", city="Genova", region="Liguria"),
    Store(id="407", name="IKEA Napoli", city="Napoli", region="Campania"),
    Store(id="421", name="IKEA Pisa", city="Pisa", region="Toscana"),
    Store(id="372", name="IKEA Firenze", city="Firenze", region="Toscana"),
    Store(id="464", name="IKEA Catania", city="Catania", region="Sicilia"),
]


def filter_stores(stores: list[Store], store_ids: list[str]) -> list[Store]:
    """Keep only the stores whose id is listed; an empty filter keeps all."""
    if not store_ids:
        return list(stores)
    wanted = set(store_ids)
    return [store for store in stores if store.id in wanted]


def get_store_by_id(store_id: str, stores: list[Store] | None = None) -> Store | None:
    for store in stores if stores is not None else DEFAULT_STORES:
        if store.id == store_id:
            return store
    return None
