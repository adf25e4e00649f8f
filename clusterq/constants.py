"""Default network settings shared by the manager, the nodes and the client."""

MANAGER_HOST = "127.0.0.1"
MANAGER_PORT = 5000
NODE_BASE_PORT = 6000
NUM_NODES = 3