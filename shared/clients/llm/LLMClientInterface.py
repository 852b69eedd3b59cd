from abc import abstractmethod

from shared.clients.ClientInterface import ClientInterface
from shared.errors.engine_errors import GenerationError
from shared.helper.HelperConfig import HelperConfig


class LLMClientInterface(ClientInterface):
    """Single-shot chat completion used to phrase answers from retrieved context."""

    request_error_class = GenerationError

    def __init__(self, helper_config: HelperConfig):
        super().__init__(helper_config=helper_config)
        prefix = self.get_client_type().upper()
        self.chat_model = helper_config.get_string_val(f"{prefix}_CHAT_MODEL", default=None)
        self.temperature = helper_config.get_number_val(f"{prefix}_TEMPERATURE", default=0.7)
        self.max_tokens = int(helper_config.get_number_val(f"{prefix}_MAX_TOKENS", default=1000))

    ##########################################
    ################ GETTER ##################
    ##########################################

    ################ GENERAL ##################
    def _get_client_type(self) -> str:
        return "llm"

    ################ ENDPOINTS ##################
    @abstractmethod
    def _get_endpoint_chat(self) -> str:
        pass

    ################ PAYLOAD BUILDER ##################
    @abstractmethod
    def get_chat_payload(self, messages: list[dict]) -> dict:
        """Wrap role/content messages into the engine's request body, non-streaming,
        with LLM_TEMPERATURE and LLM_MAX_TOKENS applied."""
        pass

    ##########################################
    ################# OTHER ##################
    ##########################################

    @abstractmethod
    def extract_chat_response(self, response_data: dict) -> str:
        """
        Raises:
            ValueError: If the body holds no assistant message.
        """
        pass

    ##########################################
    ############### REQUESTS #################
    ##########################################

    async def do_chat(self, messages: list[dict]) -> str:
        """Run one completion and return the assistant text.

        Args:
            messages (list[dict]): e.g. [{"role": "system", ...}, {"role": "user", ...}].

        Raises:
            GenerationError: If the request fails or the reply cannot be read.
        """
        response = await self.do_request(
            method="POST",
            endpoint=self._get_endpoint_chat(),
            json=self.get_chat_payload(messages),
            raise_on_error=True,
        )
        try:
            return self.extract_chat_response(response.json())
        except ValueError as exc:
            raise GenerationError(str(exc)) from exc
