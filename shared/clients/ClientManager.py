from shared.clients.ClientInterface import ClientInterface
from shared.helper.HelperConfig import HelperConfig


class ClientManager:
    """
    Base class for the per-type client managers.

    Reads ``{TYPE}_ENGINE`` from the environment and imports
    ``shared.clients.{type}.{engine}.{Prefix}Client{Engine}`` dynamically.
    """

    # e.g. "embed"; the module and env prefix
    client_type: str = ""
    # e.g. "Embed"; the class name prefix
    class_prefix: str = ""
    # engine used when {TYPE}_ENGINE is unset, None makes it mandatory
    default_engine: str | None = None

    def __init__(self, helper_config: HelperConfig):
        self.helper_config = helper_config
        self.logging = helper_config.get_logger()
        self.client = self._initialize_client()

    def _get_engine_from_env(self) -> str:
        """
        Reads the engine name from ENV configuration.

        Returns:
            str: The capitalised engine name (e.g. "Ollama").

        Raises:
            ValueError: If no engine is configured and there is no default.
        """
        env_key = f"{self.client_type.upper()}_ENGINE"
        engine = self.helper_config.get_string_val(env_key, default=self.default_engine)
        if not engine or not engine.strip():
            raise ValueError(f"No {self.class_prefix} engine specified in configuration ({env_key}).")
        return engine.strip().lower().capitalize()

    def _initialize_client(self) -> ClientInterface:
        """
        Instantiates the client of the configured engine.

        Raises:
            ValueError: If the engine is not supported.
        """
        engine = self._get_engine_from_env()
        class_name = f"{self.class_prefix}Client{engine}"
        try:
            module = __import__(
                f"shared.clients.{self.client_type}.{engine.lower()}.{class_name}",
                fromlist=[class_name],
            )
            client_class = getattr(module, class_name)
        except (ImportError, AttributeError) as e:
            raise ValueError(f"Unsupported {self.class_prefix} engine specified: '{engine}'. Error: {e}")
        client = client_class(helper_config=self.helper_config)
        self.logging.debug("Instantiated %s client for engine: %s", self.class_prefix, engine)
        return client

    def get_client(self) -> ClientInterface:
        return self.client
