"""
Electra Contract ABI

The subset of the contract interface the client uses. Output names
match the field tuples in electra.gateway.decoding.

A full Truffle/Hardhat build artifact can be used instead:
    abi = load_abi("build/contracts/Electra.json")
"""

import json
from pathlib import Path
from typing import Optional, Union


def _param(name: str, type_: str, indexed: Optional[bool] = None) -> dict:
    entry = {"name": name, "type": type_, "internalType": type_}
    if indexed is not None:
        entry["indexed"] = indexed
    return entry


def _view(name: str, inputs: list, outputs: list) -> dict:
    return {
        "type": "function",
        "name": name,
        "stateMutability": "view",
        "inputs": inputs,
        "outputs": outputs,
    }


def _write(name: str, inputs: list) -> dict:
    return {
        "type": "function",
        "name": name,
        "stateMutability": "nonpayable",
        "inputs": inputs,
        "outputs": [],
    }


def _event(name: str, inputs: list) -> dict:
    return {"type": "event", "name": name, "anonymous": False, "inputs": inputs}


ELECTRA_ABI: list[dict] = [
    # Reads
    _view("getElectionInfo", [], [
        _param("title", "string"),
        _param("description", "string"),
        _param("startTime", "uint256"),
        _param("endTime", "uint256"),
        _param("registrationDeadline", "uint256"),
        _param("isActive", "bool"),
        _param("isFinalized", "bool"),
        _param("totalVoters", "uint256"),
        _param("totalVotes", "uint256"),
        _param("winnerID", "uint256"),
    ]),
    _view("getAllCandidates", [], [
        _param("candidateIDs", "uint256[]"),
        _param("names", "string[]"),
        _param("parties", "string[]"),
        _param("voteCounts", "uint256[]"),
        _param("isActiveArray", "bool[]"),
    ]),
    _view("getVoterInfo", [_param("voter", "address")], [
        _param("isRegistered", "bool"),
        _param("hasVoted", "bool"),
        _param("candidateVoted", "uint256"),
        _param("voterID", "uint256"),
        _param("registrationTime", "uint256"),
        _param("verificationHash", "bytes32"),
    ]),
    _view("getUserInfo", [_param("user", "address")], [
        _param("role", "uint8"),
        _param("isActive", "bool"),
        _param("assignedAt", "uint256"),
        _param("assignedBy", "address"),
    ]),
    _view("getCurrentWinner", [], [
        _param("winnerID", "uint256"),
        _param("winnerName", "string"),
        _param("winnerParty", "string"),
        _param("maxVotes", "uint256"),
        _param("isTie", "bool"),
    ]),
    _view("getElectionStatistics", [], [
        _param("totalRegisteredVoters", "uint256"),
        _param("totalVotesCast", "uint256"),
        _param("voterTurnoutPercentage", "uint256"),
        _param("activeCandidates", "uint256"),
        _param("totalCandidatesCount", "uint256"),
        _param("hasWinner", "bool"),
        _param("electionComplete", "bool"),
    ]),
    _view("getVoteRecord", [_param("recordID", "uint256")], [
        _param("voter", "address"),
        _param("candidateID", "uint256"),
        _param("timestamp", "uint256"),
        _param("verificationHash", "bytes32"),
    ]),
    _view("verifyVote", [_param("voter", "address"), _param("verificationHash", "bytes32")], [
        _param("", "bool"),
    ]),
    # Writes
    _write("createElection", [
        _param("title", "string"),
        _param("description", "string"),
        _param("registrationDeadline", "uint256"),
        _param("startTime", "uint256"),
        _param("endTime", "uint256"),
    ]),
    _write("addCandidate", [
        _param("name", "string"),
        _param("party", "string"),
        _param("manifesto", "string"),
    ]),
    _write("deactivateCandidate", [_param("candidateID", "uint256")]),
    _write("registerVoter", [_param("voter", "address")]),
    _write("selfRegister", []),
    _write("vote", [_param("candidateID", "uint256")]),
    _write("startVoting", []),
    _write("endVoting", []),
    _write("finalizeElection", []),
    _write("assignRole", [_param("user", "address"), _param("role", "uint8")]),
    _write("revokeRole", [_param("user", "address")]),
    # Events
    _event("VoteCast", [
        _param("voter", "address", indexed=True),
        _param("candidateID", "uint256", indexed=True),
        _param("timestamp", "uint256", indexed=False),
        _param("voteRecordID", "uint256", indexed=False),
    ]),
    _event("VoterRegistered", [
        _param("voter", "address", indexed=True),
        _param("voterID", "uint256", indexed=False),
        _param("timestamp", "uint256", indexed=False),
    ]),
    _event("CandidateAdded", [
        _param("candidateID", "uint256", indexed=True),
        _param("name", "string", indexed=False),
        _param("party", "string", indexed=False),
        _param("addedBy", "address", indexed=True),
    ]),
    _event("ElectionStarted", [
        _param("startTime", "uint256", indexed=False),
        _param("endTime", "uint256", indexed=False),
    ]),
    _event("ElectionEnded", [
        _param("endTime", "uint256", indexed=False),
        _param("totalVotes", "uint256", indexed=False),
    ]),
]


def load_abi(path: Union[str, Path]) -> list[dict]:
    """Read an ABI from a build artifact ({"abi": [...]}) or a bare ABI list."""
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if isinstance(data, dict):
        if "abi" not in data:
            raise ValueError(f"{path} has no 'abi' key")
        return data["abi"]
    return data
