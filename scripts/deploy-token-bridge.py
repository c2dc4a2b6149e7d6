"""Deploy a token bridge for a local rollup and write network.json.

Needs a token bridge creator already deployed on the parent chain
and the compiled child factory artifact.

.. code-block:: shell

    export PARENT_RPC=http://localhost:8547
    export CHILD_RPC=http://localhost:3347
    export PARENT_KEY=...
    export CHILD_KEY=...
    export ROLLUP_OWNER_KEY=...
    export ROLLUP_ADDRESS=...
    export INBOX_ADDRESS=...
    export TOKEN_BRIDGE_CREATOR=...
    export CHILD_FACTORY_ARTIFACT=build/L2AtomicTokenBridgeFactory.json
    # Optional, otherwise WETH is deployed from WETH_ARTIFACT
    export PARENT_WETH_OVERRIDE=...

    python scripts/deploy-token-bridge.py
"""

import logging
from pathlib import Path

import typer
from web3 import HTTPProvider, Web3

from eth_token_bridge.abi import load_contract_artifact
from eth_token_bridge.config import BridgeConfig, DeploymentConfig, WaitPolicy
from eth_token_bridge.deployment import DeploymentOrchestrator
from eth_token_bridge.hotwallet import HotWallet
from eth_token_bridge.utils import setup_console_logging
from eth_token_bridge.web3_endpoint import Web3ChainEndpoint

logger = logging.getLogger(__name__)

app = typer.Typer()


@app.command()
def main(
    *,
    parent_rpc: str = typer.Option("http://localhost:8547", envvar="PARENT_RPC", help="Parent chain JSON-RPC URL"),
    child_rpc: str = typer.Option("http://localhost:3347", envvar="CHILD_RPC", help="Child chain JSON-RPC URL"),
    parent_key: str = typer.Option(..., envvar="PARENT_KEY", help="Parent chain deployer private key"),
    child_key: str = typer.Option(..., envvar="CHILD_KEY", help="Child chain private key, used for manual redeems"),
    rollup_owner_key: str = typer.Option(..., envvar="ROLLUP_OWNER_KEY", help="Rollup owner private key"),
    rollup_address: str = typer.Option(..., envvar="ROLLUP_ADDRESS", help="Rollup contract on the parent chain"),
    inbox_address: str = typer.Option(..., envvar="INBOX_ADDRESS", help="Rollup inbox on the parent chain"),
    token_bridge_creator: str = typer.Option(..., envvar="TOKEN_BRIDGE_CREATOR", help="Token bridge creator on the parent chain"),
    child_factory_artifact: Path = typer.Option(..., envvar="CHILD_FACTORY_ARTIFACT", help="Compiled child factory, Hardhat or Foundry JSON"),
    weth_artifact: Path = typer.Option(None, envvar="WETH_ARTIFACT", help="Compiled WETH9, used if no WETH override is given"),
    parent_weth_override: str = typer.Option(None, envvar="PARENT_WETH_OVERRIDE", help="Existing parent chain WETH"),
    output: Path = typer.Option(Path("network.json"), envvar="NETWORK_OUTPUT", help="Where to write the network descriptor"),
    timeout: float = typer.Option(900.0, envvar="MESSAGE_TIMEOUT", help="Seconds to wait for the retryables"),
):
    """Deploy the token bridge contracts on both chains."""
    setup_console_logging(default_log_level="info")

    parent_web3 = Web3(HTTPProvider(parent_rpc))
    child_web3 = Web3(HTTPProvider(child_rpc))
    logger.info("Parent chain %d, block %d", parent_web3.eth.chain_id, parent_web3.eth.block_number)
    logger.info("Child chain %d, block %d", child_web3.eth.chain_id, child_web3.eth.block_number)

    deployer = HotWallet.from_private_key(parent_key)
    deployer.sync_nonce(parent_web3)
    rollup_owner = HotWallet.from_private_key(rollup_owner_key)
    rollup_owner.sync_nonce(parent_web3)
    child_wallet = HotWallet.from_private_key(child_key)
    child_wallet.sync_nonce(child_web3)

    logger.info("Deployer %s has %s ETH", deployer.address, deployer.get_native_currency_balance(parent_web3))

    _, child_factory_bytecode = load_contract_artifact(child_factory_artifact)
    weth_bytecode = b""
    if weth_artifact:
        _, weth_bytecode = load_contract_artifact(weth_artifact)

    config = DeploymentConfig(
        token_bridge_creator=Web3.to_checksum_address(token_bridge_creator),
        inbox=Web3.to_checksum_address(inbox_address),
        rollup=Web3.to_checksum_address(rollup_address),
        rollup_owner=rollup_owner.address,
        child_factory_bytecode=child_factory_bytecode,
        weth_bytecode=weth_bytecode,
    )
    bridge_config = BridgeConfig(wait=WaitPolicy(poll_interval=5.0, timeout=timeout))

    parent = Web3ChainEndpoint(parent_web3, signers=[deployer, rollup_owner], backoff=bridge_config.backoff)
    child = Web3ChainEndpoint(child_web3, signers=[child_wallet], backoff=bridge_config.backoff)

    orchestrator = DeploymentOrchestrator(config, deployer=deployer.address, rollup_owner=rollup_owner.address, bridge_config=bridge_config)
    plan = orchestrator.deploy(parent, child, fee_token_override=parent_weth_override)

    plan.to_network_descriptor().write_json(output)
    print(f"Token bridge deployed, network descriptor written to {output.absolute()}")


if __name__ == "__main__":
    app()
