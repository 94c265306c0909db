import logging

from backend.config import LOG_LEVEL

LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"


def get_logger(name: str) -> logging.Logger:
	"""
	Logger nomeado com um único StreamHandler.
	Parâmetros:
		name (str): nome do componente
	Retorno:
		logging.Logger
	"""
	logger = logging.getLogger(name)
	logger.setLevel(LOG_LEVEL)
	if not logger.hasHandlers():
		handler = logging.StreamHandler()
		handler.setFormatter(logging.Formatter(LOG_FORMAT))
		logger.addHandler(handler)
	return logger
