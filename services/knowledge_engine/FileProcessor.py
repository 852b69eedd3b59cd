from pathlib import PurePath

from shared.errors.engine_errors import InvalidInputError
from shared.helper.HelperConfig import HelperConfig
from shared.models.knowledge import ProcessedFile

MAX_FILE_SIZE = 10 * 1024 * 1024  # 10 MB
TEXT_FILE_TYPES = {"txt", "md"}


class FileProcessor:
    """Turns uploaded files into ingestible text."""

    def __init__(self, helper_config: HelperConfig, max_file_size: int = MAX_FILE_SIZE) -> None:
        self.logging = helper_config.get_logger()
        self.max_file_size = max_file_size

    def validate_file(self, filename: str, size: int) -> str:
        """Check name and size of an upload.

        Returns:
            str: The lowercase file type derived from the extension.

        Raises:
            InvalidInputError: If the file is empty, too large or of an unsupported type.
        """
        if size <= 0:
            raise InvalidInputError("Uploaded file is empty.")
        if size > self.max_file_size:
            raise InvalidInputError(
                f"File size {size} exceeds the maximum of {self.max_file_size // (1024 * 1024)}MB."
            )
        file_type = PurePath(filename or "").suffix.lstrip(".").lower()
        if file_type not in TEXT_FILE_TYPES:
            raise InvalidInputError(
                f"Unsupported file type '{file_type or 'unknown'}'. Supported types: {', '.join(sorted(TEXT_FILE_TYPES))}."
            )
        return file_type

    def process_file(self, filename: str, data: bytes) -> ProcessedFile:
        """Validate and decode an uploaded file.

        Args:
            filename (str): Original file name; its stem becomes the document title.
            data (bytes): Raw file content.

        Returns:
            ProcessedFile: Title, decoded text, file type and size.

        Raises:
            InvalidInputError: If validation fails or the file is not valid UTF-8 text.
        """
        file_type = self.validate_file(filename, len(data))
        try:
            content = data.decode("utf-8-sig")
        except UnicodeDecodeError as exc:
            raise InvalidInputError(f"File '{filename}' is not valid UTF-8 text.") from exc
        if not content.strip():
            raise InvalidInputError(f"File '{filename}' contains no text.")

        title = PurePath(filename).stem or filename
        self.logging.debug("Processed upload '%s' (%s, %d bytes)", filename, file_type, len(data))
        return ProcessedFile(title=title, content=content, file_type=file_type, file_size=len(data))
