from shared.clients.ClientManager import ClientManager
from shared.clients.llm.LLMClientInterface import LLMClientInterface


class LLMClientManager(ClientManager):
    """Instantiates the generation backend named by LLM_ENGINE."""

    client_type = "llm"
    class_prefix = "LLM"

    def get_client(self) -> LLMClientInterface:
        return self.client
