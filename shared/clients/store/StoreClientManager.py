from shared.clients.ClientManager import ClientManager
from shared.clients.store.StoreClientInterface import StoreClientInterface


class StoreClientManager(ClientManager):
    """Instantiates the persistence backend named by STORE_ENGINE, the in-process memory store by default."""

    client_type = "store"
    class_prefix = "Store"
    default_engine = "memory"

    def get_client(self) -> StoreClientInterface:
        return self.client
