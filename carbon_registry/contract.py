# contract.py — CarbonCreditRegistry solidity source and its ABI
#
# One token per project, fungible credits minted to the owner in the same
# registerProject call. Every state-changing call carries the caller's
# idempotency key (opKey); a key executes at most once, and executed(opKey)
# returns the token it touched (0 = never executed).

SOLC_VERSION = "0.8.20"
CONTRACT_NAME = "CarbonCreditRegistry"

SOURCE = r"""// SPDX-License-Identifier: MIT
pragma solidity ^0.8.20;

contract CarbonCreditRegistry {
    struct Project {
        string projectId;
        address owner;
        uint256 credits;
        uint256 retired;
        string metaURI;
        bool exists;
    }

    address public registrar;
    uint256 public nextTokenId = 1;
    uint256 public totalCredits;
    uint256 public totalRetired;

    mapping(uint256 => Project) public projects;
    mapping(string => uint256) public tokenOfProject;
    mapping(bytes32 => uint256) public executed;
    mapping(address => uint256) public creditBalance;

    event ProjectRegistered(bytes32 indexed opKey, uint256 indexed tokenId, address indexed owner, string projectId, uint256 credits);
    event CreditsRetired(bytes32 indexed opKey, uint256 indexed tokenId, uint256 amount, string reason);

    modifier onlyRegistrar() {
        require(msg.sender == registrar, "not registrar");
        _;
    }

    constructor() {
        registrar = msg.sender;
    }

    function registerProject(bytes32 opKey, string calldata projectId, address owner, uint256 credits, string calldata metaURI)
        external onlyRegistrar returns (uint256 tokenId)
    {
        require(executed[opKey] == 0, "operation already executed");
        require(owner != address(0), "invalid owner");
        require(credits > 0, "no credits");
        require(tokenOfProject[projectId] == 0, "duplicate project");

        tokenId = nextTokenId++;
        projects[tokenId] = Project(projectId, owner, credits, 0, metaURI, true);
        tokenOfProject[projectId] = tokenId;
        executed[opKey] = tokenId;
        creditBalance[owner] += credits;
        totalCredits += credits;
        emit ProjectRegistered(opKey, tokenId, owner, projectId, credits);
    }

    function retireCredits(bytes32 opKey, uint256 tokenId, uint256 amount, string calldata reason)
        external onlyRegistrar
    {
        require(executed[opKey] == 0, "operation already executed");
        Project storage p = projects[tokenId];
        require(p.exists, "unknown token");
        require(amount > 0 && p.retired + amount <= p.credits, "exceeds available credits");

        p.retired += amount;
        creditBalance[p.owner] -= amount;
        totalRetired += amount;
        executed[opKey] = tokenId;
        emit CreditsRetired(opKey, tokenId, amount, reason);
    }
}
"""


def _view(name, inputs, outputs):
    return {"type": "function", "name": name, "stateMutability": "view",
            "inputs": [{"name": n, "type": t} for n, t in inputs],
            "outputs": [{"name": n, "type": t} for n, t in outputs]}


ABI = [
    {"type": "constructor", "stateMutability": "nonpayable", "inputs": []},
    _view("registrar", [], [("", "address")]),
    _view("nextTokenId", [], [("", "uint256")]),
    _view("totalCredits", [], [("", "uint256")]),
    _view("totalRetired", [], [("", "uint256")]),
    _view("projects", [("", "uint256")], [
        ("projectId", "string"), ("owner", "address"), ("credits", "uint256"),
        ("retired", "uint256"), ("metaURI", "string"), ("exists", "bool"),
    ]),
    _view("tokenOfProject", [("", "string")], [("", "uint256")]),
    _view("executed", [("", "bytes32")], [("", "uint256")]),
    _view("creditBalance", [("", "address")], [("", "uint256")]),
    {
        "type": "function", "name": "registerProject", "stateMutability": "nonpayable",
        "inputs": [
            {"name": "opKey", "type": "bytes32"}, {"name": "projectId", "type": "string"},
            {"name": "owner", "type": "address"}, {"name": "credits", "type": "uint256"},
            {"name": "metaURI", "type": "string"},
        ],
        "outputs": [{"name": "tokenId", "type": "uint256"}],
    },
    {
        "type": "function", "name": "retireCredits", "stateMutability": "nonpayable",
        "inputs": [
            {"name": "opKey", "type": "bytes32"}, {"name": "tokenId", "type": "uint256"},
            {"name": "amount", "type": "uint256"}, {"name": "reason", "type": "string"},
        ],
        "outputs": [],
    },
    {
        "type": "event", "name": "ProjectRegistered", "anonymous": False,
        "inputs": [
            {"name": "opKey", "type": "bytes32", "indexed": True},
            {"name": "tokenId", "type": "uint256", "indexed": True},
            {"name": "owner", "type": "address", "indexed": True},
            {"name": "projectId", "type": "string", "indexed": False},
            {"name": "credits", "type": "uint256", "indexed": False},
        ],
    },
    {
        "type": "event", "name": "CreditsRetired", "anonymous": False,
        "inputs": [
            {"name": "opKey", "type": "bytes32", "indexed": True},
            {"name": "tokenId", "type": "uint256", "indexed": True},
            {"name": "amount", "type": "uint256", "indexed": False},
            {"name": "reason", "type": "string", "indexed": False},
        ],
    },
]
