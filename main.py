import os
import uvicorn

from llama_lifecycle.frameworks_drivers.client_factory import ClientFactory
from llama_lifecycle.frameworks_drivers.config import Config
from llama_lifecycle.frameworks_drivers.device_inventory import DeviceInventory
from llama_lifecycle.frameworks_drivers.process_supervisor import ProcessSupervisor
from llama_lifecycle.frameworks_drivers.server_lifecycle_manager import ServerLifecycleManager
from llama_lifecycle.interface_adapters.api import API
from llama_lifecycle.shared.logger import Logger


def build_api(config: Config) -> API:
    inventory = DeviceInventory(config.placement)
    supervisor = ProcessSupervisor(config.supervisor)
    client_factory = ClientFactory(config.engine)
    manager = ServerLifecycleManager(config, inventory, supervisor, client_factory)
    return API(manager, inventory)


if __name__ == "__main__":
    logger = Logger.get(__name__)

    try:
        config = Config.load(os.environ.get("LLAMA_LIFECYCLE_CONFIG", "config.json"))
    except FileNotFoundError:
        logger.info("No config.json found, using defaults")
        config = Config()

    # Override the engine binary if set in environment
    if "LLAMA_SERVER_BINARY" in os.environ:
        config.engine.binary = os.environ["LLAMA_SERVER_BINARY"]

    api = build_api(config)

    logger.info("Starting llama-lifecycle control API...")
    uvicorn.run(api.app, host=config.server.host, port=config.server.port)
