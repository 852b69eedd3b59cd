from shared.clients.ClientManager import ClientManager
from shared.clients.embed.EmbedClientInterface import EmbedClientInterface


class EmbedClientManager(ClientManager):
    """Instantiates the embedding backend named by EMBED_ENGINE."""

    client_type = "embed"
    class_prefix = "Embed"

    def get_client(self) -> EmbedClientInterface:
        return self.client
