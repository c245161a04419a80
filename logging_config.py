import logging

def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    logging.getLogger('app.api.upload').setLevel(logging.DEBUG)
    logging.getLogger('app.services.converter').setLevel(logging.DEBUG)
    logging.getLogger('app.services.strategies').setLevel(logging.DEBUG)
    logging.getLogger('app.core.progress_channel').setLevel(logging.DEBUG)
