"""
Per-player money balances.

Balances are owner-writable replicated values: only the owning player may
change their own balance, and the host relays the write to everyone. The host
watches every account so a negative balance can end the game.
"""

import logging

from lifeboard.config import STARTING_MONEY
from lifeboard.replicated import WritePermission
from lifeboard.lifepath.state import money_container


logger = logging.getLogger(__name__)


class Ledger:

    def __init__(self, hub, starting_money=STARTING_MONEY):
        self.hub = hub
        self.starting_money = starting_money
        self._accounts = {}
        self._bankruptcy_listeners = []

    def open_account(self, player):
        """Create the player's balance if it does not exist yet."""
        account = self._accounts.get(player)
        if account is not None:
            return account

        account = self.hub.create(
            money_container(player),
            self.starting_money,
            permission=WritePermission.OWNER,
            owner=player,
        )
        account.rebroadcast()
        account.on_change(lambda previous, current: self._check_balance(player, previous, current))
        self._accounts[player] = account
        logger.info("Opened account for player %s with %s", player, self.starting_money)
        return account

    def has_account(self, player):
        return player in self._accounts

    def get_balance(self, player):
        return self._accounts[player].value

    def write_balance(self, player, value, writer):
        if not isinstance(value, int) or isinstance(value, bool):
            raise TypeError(f"Balance must be an int, got {value!r}")
        return self._accounts[player].write(value, writer=writer)

    def on_bankrupt(self, listener):
        self._bankruptcy_listeners.append(listener)

    def _check_balance(self, player, previous, current):
        if current < 0:
            logger.info("Player %s balance went negative (%s -> %s)", player, previous, current)
            for listener in list(self._bankruptcy_listeners):
                listener(player)
