import sys
from PyQt5.QtCore import QCoreApplication
from loguru import logger

from app import ApplicationActivator
from schemas import settings


def _on_other_instance(arguments: list[str]):
    logger.info(f"Launched again with: {arguments}")


def main(argv: list[str]) -> int:
    logger.add(settings.user_logs_dir / "file_{time}.log")

    app = QCoreApplication(argv)
    activator = ApplicationActivator()
    if not activator.launch_or_return(_on_other_instance, argv):
        logger.info("Another instance is running, arguments forwarded")
        return 0

    logger.info(f"Running as the only instance ({activator.unique_name})")
    return app.exec_()


if __name__ == "__main__":
    sys.exit(main(sys.argv))
