import logging

import uvicorn

from drudge.api import create_app
from drudge.config import get_settings
from drudge.core.engine import Engine


def main() -> None:
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    engine = Engine.from_settings(settings)
    app = create_app(engine, settings)
    uvicorn.run(app, host=settings.host, port=settings.port, log_config=None)


if __name__ == "__main__":
    main()
