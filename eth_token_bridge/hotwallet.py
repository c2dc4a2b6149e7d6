"""Hot wallet signer for bridge operators.

- Create local wallets from a private key

- Sign transactions with manual nonce management,
  so that a single orchestrator run serialises its submissions per signer
"""

import logging
import secrets
import threading
from decimal import Decimal
from typing import NamedTuple

from eth_account import Account
from eth_account.signers.local import LocalAccount
from eth_typing import HexAddress
from hexbytes import HexBytes
from web3 import Web3

logger = logging.getLogger(__name__)


class SignedTransactionWithNonce(NamedTuple):
    """A signed transaction with its source.

    Retains the nonce and the unsigned payload so broadcast failures
    can be diagnosed.
    """

    #: Bytes to broadcast
    raw_transaction: HexBytes

    #: Transaction hash
    hash: HexBytes

    #: What was the source nonce for this transaction
    nonce: int

    #: Whas was the source address for this trasaction
    address: HexAddress

    #: Unencoded transaction data as a dict.
    #:
    #: If broadcast fails, retain the source so we can debug the cause,
    #: like the original gas parameters.
    source: dict | None = None

    def __repr__(self):
        return f"<SignedTransactionWithNonce hash:{self.hash.hex()} nonce:{self.nonce} from:{self.address}>"


def get_tx_broadcast_data(signed_tx) -> HexBytes:
    """Get raw transaction bytes.

    eth_account changed ``rawTransaction`` to ``raw_transaction`` in newer versions.
    """
    raw = getattr(signed_tx, "raw_transaction", None)
    if raw is None:
        raw = signed_tx.rawTransaction
    return HexBytes(raw)


class HotWallet:
    """Hot wallet for signing bridge transactions.

    - Maintains a plain text private key in the process memory
      using :py:class:`eth_account.signers.local.LocalAccount` and a nonce counter.

    - Nonce allocation is guarded by a lock: messages are waited for concurrently,
      but transactions from one signer are never signed concurrently.

    Example:

    .. code-block:: python

        deployer = HotWallet.from_private_key(os.environ["PARENT_KEY"])
        deployer.sync_nonce(web3)
        parent = Web3ChainEndpoint(web3, signers=[deployer])
    """

    def __init__(self, account: LocalAccount):
        """Create a hot wallet from a local account."""
        self.account = account
        self.current_nonce: int | None = None
        self._lock = threading.Lock()

    def __repr__(self):
        return f"<Hot wallet {self.account.address}>"

    @property
    def address(self) -> HexAddress:
        """Ethereum address of the wallet."""
        return self.account.address

    def sync_nonce(self, web3: Web3):
        """Initialise the current nonce from the on-chain data."""
        new_nonce = web3.eth.get_transaction_count(self.account.address)
        with self._lock:
            if self.current_nonce and new_nonce < self.current_nonce:
                logger.warning("Nonce sync failed, read onchain nonce %d that is older than our current nonce %d", new_nonce, self.current_nonce)
                return
            self.current_nonce = new_nonce
        logger.info("Synced nonce for %s to %d", self.account.address, new_nonce)

    def allocate_nonce(self) -> int:
        """Get the next free available nonce to be used with a transaction.

        Increase the nonce counter.
        """
        with self._lock:
            assert self.current_nonce is not None, f"Nonce is not yet synced from the blockchain: {self}"
            nonce = self.current_nonce
            self.current_nonce += 1
            return nonce

    def sign_transaction_with_new_nonce(self, tx: dict) -> SignedTransactionWithNonce:
        """Signs a transaction and allocates a nonce for it.

        :param tx:
            Ethereum transaction data as a dict.
            This is modified in-place to include nonce.

        :return:
            A transaction payload and nonce with used to generate this transaction.
        """
        assert type(tx) == dict
        assert "nonce" not in tx
        tx["nonce"] = self.allocate_nonce()
        _signed = self.account.sign_transaction(tx)
        return SignedTransactionWithNonce(
            raw_transaction=get_tx_broadcast_data(_signed),
            hash=HexBytes(_signed.hash),
            nonce=tx["nonce"],
            address=self.address,
            source=tx,
        )

    def get_native_currency_balance(self, web3: Web3) -> Decimal:
        """Get the balance of the native currency of the wallet.

        Useful to check if you have enough cryptocurrency for the retryable deposits.
        """
        balance = web3.eth.get_balance(self.address)
        return web3.from_wei(balance, "ether")

    @staticmethod
    def from_private_key(key: str) -> "HotWallet":
        """Create a hot wallet from a private key that is passed in as a hex string.

        :param key: 0x prefixed hex string
        :return: Ready to go hot wallet account
        """
        assert type(key) == str, f"Expected private key as string, got {type(key)}"
        assert key.startswith("0x"), f"This system assumes private keys are prefixed with 0x, your key starts with {key[0:8]}... Please add 0x prefix to your private key hex string"
        account = Account.from_key(key)
        return HotWallet(account)

    @staticmethod
    def create_for_testing(web3: Web3, test_account_n=0, eth_amount=1) -> "HotWallet":
        """Creates a new hot wallet and seeds it with ETH from one of well-known test accounts.

        Shortcut method for unit testing.
        """
        wallet = HotWallet.from_private_key("0x" + secrets.token_hex(32))
        tx_hash = web3.eth.send_transaction(
            {
                "from": web3.eth.accounts[test_account_n],
                "to": wallet.address,
                "value": eth_amount * 10**18,
            }
        )
        web3.eth.wait_for_transaction_receipt(tx_hash)
        wallet.sync_nonce(web3)
        return wallet
