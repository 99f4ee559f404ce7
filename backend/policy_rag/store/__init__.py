from policy_rag.store.tenant_store import SearchableChunk, TenantStore

__all__ = ["SearchableChunk", "TenantStore"]
