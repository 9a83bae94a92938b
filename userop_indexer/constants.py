""" Constants used for the user operation indexer """
from web3 import Web3

# EntryPoint v0.7, deployed at the same address on all supported chains
ENTRY_POINT_ADDRESS = Web3.to_checksum_address(
    "0x0000000071727De22E5E9d8BAf0edAc6f37da032"
)

USER_OPERATION_EVENT_SIGNATURE = (
    "UserOperationEvent(bytes32,address,address,uint256,bool,uint256,uint256)"
)

USER_OPERATION_EVENT_TOPIC = Web3.keccak(
    text=USER_OPERATION_EVENT_SIGNATURE
).to_0x_hex()

# ABI types of the non-indexed part of the event (nonce, success, gas cost, gas used)
USER_OPERATION_EVENT_DATA_TYPES = ["uint256", "bool", "uint256", "uint256"]

# topic0 plus three indexed fields
USER_OPERATION_EVENT_TOPIC_COUNT = 4

WORD_SIZE = 32

# uint256 holds at most 78 decimal digits
UINT256_DIGITS = 78

# Default number of blocks per eth_getLogs request
MAX_BLOCK_SPAN = 2000
