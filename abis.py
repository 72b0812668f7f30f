# Minimal ABIs for the CDP core contracts and the TrovePilot keeper engine.

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
MAX_UINT256 = 2**256 - 1

TROVE_MANAGER_ABI = [{
    "inputs": [
        {"internalType": "address", "name": "_borrower", "type": "address"},
        {"internalType": "uint256", "name": "_price", "type": "uint256"}
    ],
    "name": "getCurrentICR",
    "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}],
    "stateMutability": "view",
    "type": "function"
}]

SORTED_TROVES_ABI = [{
    "inputs": [],
    "name": "getSize",
    "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}],
    "stateMutability": "view",
    "type": "function"
}, {
    "inputs": [],
    "name": "getLast",
    "outputs": [{"internalType": "address", "name": "", "type": "address"}],
    "stateMutability": "view",
    "type": "function"
}, {
    "inputs": [{"internalType": "address", "name": "_id", "type": "address"}],
    "name": "getPrev",
    "outputs": [{"internalType": "address", "name": "", "type": "address"}],
    "stateMutability": "view",
    "type": "function"
}, {
    "inputs": [{"internalType": "address", "name": "_id", "type": "address"}],
    "name": "getNext",
    "outputs": [{"internalType": "address", "name": "", "type": "address"}],
    "stateMutability": "view",
    "type": "function"
}, {
    "inputs": [
        {"internalType": "uint256", "name": "_NICR", "type": "uint256"},
        {"internalType": "address", "name": "_prevId", "type": "address"},
        {"internalType": "address", "name": "_nextId", "type": "address"}
    ],
    "name": "findInsertPosition",
    "outputs": [
        {"internalType": "address", "name": "upperHint", "type": "address"},
        {"internalType": "address", "name": "lowerHint", "type": "address"}
    ],
    "stateMutability": "view",
    "type": "function"
}]

HINT_HELPERS_ABI = [{
    "inputs": [
        {"internalType": "uint256", "name": "_MUSDamount", "type": "uint256"},
        {"internalType": "uint256", "name": "_price", "type": "uint256"},
        {"internalType": "uint256", "name": "_maxIterations", "type": "uint256"}
    ],
    "name": "getRedemptionHints",
    "outputs": [
        {"internalType": "address", "name": "firstRedemptionHint", "type": "address"},
        {"internalType": "uint256", "name": "partialRedemptionHintNICR", "type": "uint256"},
        {"internalType": "uint256", "name": "truncatedMUSDamount", "type": "uint256"}
    ],
    "stateMutability": "view",
    "type": "function"
}]

PRICE_FEED_ABI = [{
    "inputs": [],
    "name": "latestRoundData",
    "outputs": [
        {"internalType": "uint80", "name": "roundId", "type": "uint80"},
        {"internalType": "int256", "name": "answer", "type": "int256"},
        {"internalType": "uint256", "name": "startedAt", "type": "uint256"},
        {"internalType": "uint256", "name": "updatedAt", "type": "uint256"},
        {"internalType": "uint80", "name": "answeredInRound", "type": "uint80"}
    ],
    "stateMutability": "view",
    "type": "function"
}, {
    "inputs": [],
    "name": "fetchPrice",
    "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}],
    "stateMutability": "view",
    "type": "function"
}]

# TrovePilotEngine: permissionless wrapper that liquidates / redeems and forwards proceeds.
TROVE_PILOT_ENGINE_ABI = [{
    "inputs": [
        {"internalType": "address", "name": "_borrower", "type": "address"},
        {"internalType": "address", "name": "_recipient", "type": "address"}
    ],
    "name": "liquidateSingle",
    "outputs": [{"internalType": "uint256", "name": "succeeded", "type": "uint256"}],
    "stateMutability": "nonpayable",
    "type": "function"
}, {
    "inputs": [
        {"internalType": "address[]", "name": "_borrowers", "type": "address[]"},
        {"internalType": "address", "name": "_recipient", "type": "address"}
    ],
    "name": "liquidateBatch",
    "outputs": [{"internalType": "uint256", "name": "succeeded", "type": "uint256"}],
    "stateMutability": "nonpayable",
    "type": "function"
}, {
    "inputs": [
        {"internalType": "uint256", "name": "_musdAmount", "type": "uint256"},
        {"internalType": "address", "name": "_recipient", "type": "address"},
        {"internalType": "address", "name": "_firstHint", "type": "address"},
        {"internalType": "address", "name": "_upperHint", "type": "address"},
        {"internalType": "address", "name": "_lowerHint", "type": "address"},
        {"internalType": "uint256", "name": "_partialNICR", "type": "uint256"},
        {"internalType": "uint256", "name": "_maxIter", "type": "uint256"}
    ],
    "name": "redeemHintedTo",
    "outputs": [],
    "stateMutability": "nonpayable",
    "type": "function"
}, {
    "anonymous": False,
    "inputs": [
        {"indexed": True, "internalType": "uint256", "name": "jobId", "type": "uint256"},
        {"indexed": True, "internalType": "address", "name": "caller", "type": "address"},
        {"indexed": False, "internalType": "address", "name": "recipient", "type": "address"},
        {"indexed": False, "internalType": "uint256", "name": "musdRequested", "type": "uint256"},
        {"indexed": False, "internalType": "uint256", "name": "musdRedeemed", "type": "uint256"},
        {"indexed": False, "internalType": "uint256", "name": "musdRefunded", "type": "uint256"},
        {"indexed": False, "internalType": "uint256", "name": "collateralOut", "type": "uint256"},
        {"indexed": False, "internalType": "uint256", "name": "maxIter", "type": "uint256"}
    ],
    "name": "RedemptionExecuted",
    "type": "event"
}]

ERC20_ABI = [{
    "inputs": [
        {"internalType": "address", "name": "owner", "type": "address"},
        {"internalType": "address", "name": "spender", "type": "address"}
    ],
    "name": "allowance",
    "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}],
    "stateMutability": "view",
    "type": "function"
}, {
    "inputs": [
        {"internalType": "address", "name": "spender", "type": "address"},
        {"internalType": "uint256", "name": "amount", "type": "uint256"}
    ],
    "name": "approve",
    "outputs": [{"internalType": "bool", "name": "", "type": "bool"}],
    "stateMutability": "nonpayable",
    "type": "function"
}, {
    "inputs": [{"internalType": "address", "name": "account", "type": "address"}],
    "name": "balanceOf",
    "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}],
    "stateMutability": "view",
    "type": "function"
}]
