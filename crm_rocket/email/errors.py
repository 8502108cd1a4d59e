class EmailProviderError(Exception):
    """Failure talking to Gemini or Resend, carrying a user-facing message."""

    def __init__(self, message: str, status_code: int = 502, provider: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.provider = provider
