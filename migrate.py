import os
import sys

from loguru import logger

from db import DEFAULT_STATE_FILENAME
from persistence import PersistenceGateway


def migrate(data_dir: str = ".", filename: str = DEFAULT_STATE_FILENAME) -> bool:
    """Upgrade the state document in ``data_dir`` to the current schema.

    Returns False when there is no document to migrate.
    """
    gateway = PersistenceGateway(os.path.join(data_dir, filename))
    state = gateway.load()
    if state is None:
        return False
    gateway.save(state)
    logger.info("State document {} is at schema v{}", gateway.path, state.schema_version)
    return True


if __name__ == '__main__':
    path = sys.argv[1] if len(sys.argv) > 1 else '.'
    migrate(path)
