from abc import abstractmethod

from shared.clients.ClientInterface import ClientInterface
from shared.errors.engine_errors import EmbeddingDimensionError, EmbeddingError
from shared.helper.HelperConfig import HelperConfig


class EmbedClientInterface(ClientInterface):
    """Turns texts into vectors of the system-wide dimension EMBED_DIMENSION.

    Engines only describe their wire format (endpoints, payload, response parsing);
    batching, truncation and dimension checks happen here.
    """

    request_error_class = EmbeddingError

    def __init__(self, helper_config: HelperConfig):
        super().__init__(helper_config=helper_config)
        prefix = self.get_client_type().upper()
        self.embed_model = helper_config.get_string_val(f"{prefix}_MODEL", default="nomic-embed-text")
        self.embed_dimension = int(helper_config.get_number_val(f"{prefix}_DIMENSION", default=768))
        # longer texts are cut before sending
        self.embed_model_max_chars = int(helper_config.get_number_val(f"{prefix}_MODEL_MAX_CHARS", default=8000))

    ##########################################
    ################ GETTER ##################
    ##########################################

    ################ GENERAL ##################
    def _get_client_type(self) -> str:
        return "embed"

    ################ ENDPOINTS ##################
    @abstractmethod
    def get_endpoint_embedding(self) -> str:
        """Path the texts are POSTed to."""
        pass

    @abstractmethod
    def get_endpoint_model_details(self) -> str:
        """Path reporting the model's vector size, or "" to measure it with a test embedding."""
        pass

    ################ PAYLOAD BUILDER ##################
    @abstractmethod
    def get_embed_payload(self, texts: list[str]) -> dict:
        pass

    ##########################################
    ################# OTHER ##################
    ##########################################

    @abstractmethod
    def extract_vector_size_from_model_info(self, model_info: dict) -> int:
        """
        Raises:
            ValueError: If the model details carry no vector size.
        """
        pass

    @abstractmethod
    def extract_embeddings_from_response(self, response_data: dict) -> list[list[float]]:
        """Return one vector per input text, in input order.

        Raises:
            ValueError: If the body carries no usable vectors.
        """
        pass

    def validate_vector(self, vector: list[float]) -> list[float]:
        if len(vector) != self.embed_dimension:
            raise EmbeddingDimensionError(
                f"Embedding has dimension {len(vector)}, expected {self.embed_dimension}."
            )
        return vector

    ##########################################
    ############### REQUESTS #################
    ##########################################

    async def do_fetch_embedding_vector_size(self) -> int:
        """Ask the backend which dimension the configured model produces.

        Raises:
            EmbeddingError: If the backend is unreachable or does not reveal the size.
        """
        details_endpoint = self.get_endpoint_model_details()
        if not details_endpoint:
            sample = await self._do_embed_raw(["dimension check"])
            return len(sample[0])

        details = await self.do_request(
            method="POST",
            endpoint=details_endpoint,
            json={"name": self.embed_model},
            raise_on_error=True,
        )
        try:
            return self.extract_vector_size_from_model_info(model_info=details.json())
        except ValueError as exc:
            raise EmbeddingError(str(exc)) from exc

    async def do_embed(self, texts: list[str] | str) -> list[list[float]]:
        """Embed one text or a batch of texts.

        Args:
            texts (list[str] | str): Texts to embed; none of them may be blank.

        Returns:
            list[list[float]]: One vector per text, in input order.

        Raises:
            EmbeddingError: On blank input, a failed request or an unusable response.
            EmbeddingDimensionError: If a returned vector has the wrong dimension.
        """
        batch = [texts] if isinstance(texts, str) else list(texts)
        if not batch or any(not text or not text.strip() for text in batch):
            raise EmbeddingError("Cannot embed empty text.")

        vectors = await self._do_embed_raw([text[: self.embed_model_max_chars] for text in batch])
        if len(vectors) != len(batch):
            raise EmbeddingError(f"Embedding backend returned {len(vectors)} vectors for {len(batch)} texts.")
        return [self.validate_vector(vector) for vector in vectors]

    async def _do_embed_raw(self, texts: list[str]) -> list[list[float]]:
        response = await self.do_request(
            method="POST",
            endpoint=self.get_endpoint_embedding(),
            json=self.get_embed_payload(texts),
        )
        if response.status_code != 200:
            self.logging.error("Embedding backend answered %d: %s", response.status_code, response.text[:200])
            raise EmbeddingError(f"Embedding request failed with status {response.status_code}.")
        try:
            return self.extract_embeddings_from_response(response.json())
        except ValueError as exc:
            raise EmbeddingError(str(exc)) from exc
