class CravinsError(Exception):
	"""Base class for domain errors raised by the service layer."""


class LLMError(CravinsError):
	"""The language model call failed or returned something unusable."""


class NoTopicsAvailable(CravinsError):
	pass


class AlreadyInitialized(CravinsError):
	pass
