# registry_deploy.py — compile and deploy CarbonCreditRegistry
# Run:
#   python registry_deploy.py            # prints the address for REGISTRY_CONTRACT_ADDRESS
import json
import os

from dotenv import load_dotenv
from solcx import compile_source, install_solc, set_solc_version
from web3 import Web3

from carbon_registry.contract import CONTRACT_NAME, SOLC_VERSION, SOURCE

load_dotenv()


def compile_registry():
    install_solc(SOLC_VERSION)
    set_solc_version(SOLC_VERSION)
    compiled = compile_source(SOURCE, output_values=["abi", "bin"])
    key = next(k for k in compiled if k.endswith(f":{CONTRACT_NAME}"))
    return compiled[key]["abi"], compiled[key]["bin"]


def main():
    rpc = os.environ["WEB3_RPC_URL"]
    pk = os.environ["PRIVATE_KEY"]

    abi, bytecode = compile_registry()

    w3 = Web3(Web3.HTTPProvider(rpc))
    acct = w3.eth.account.from_key(pk)

    Contract = w3.eth.contract(abi=abi, bytecode=bytecode)
    base = w3.eth.get_block("pending")["baseFeePerGas"]
    tx = Contract.constructor().build_transaction({
        "from": acct.address,
        "nonce": w3.eth.get_transaction_count(acct.address, "pending"),
        "maxFeePerGas": base * 2 + w3.to_wei(2, "gwei"),
        "maxPriorityFeePerGas": w3.to_wei(2, "gwei"),
        "chainId": w3.eth.chain_id,
    })
    signed = w3.eth.account.sign_transaction(tx, pk)
    tx_hash = w3.eth.send_raw_transaction(signed.raw_transaction)
    rcpt = w3.eth.wait_for_transaction_receipt(tx_hash)

    print("Registry deployed at:", rcpt.contractAddress)
    print("Registrar:", acct.address)
    print("Tx:", tx_hash.hex(), "block:", rcpt.blockNumber)
    print(f"Set REGISTRY_CONTRACT_ADDRESS={rcpt.contractAddress} REGISTRY_FROM_BLOCK={rcpt.blockNumber}")
    with open(f"{CONTRACT_NAME}.abi.json", "w") as f:
        json.dump(abi, f)


if __name__ == "__main__":
    main()
