#!/usr/bin/env python3
"""
Nimbus Wallet command line.

Secrets (passphrase, mnemonic, private key) are read with getpass, never from argv.
The passphrase may also come from NIMBUS_WALLET_PASSPHRASE.
"""

import argparse
import asyncio
import getpass
import logging
import os
import sys
from decimal import Decimal

from blockchain_api import PriceOracle
from wallet_core import JsonFileStore, WalletStorage, default_wallet_dir
from wallet_errors import WalletError
from wallet_manager import WalletManager

logger = logging.getLogger(__name__)


def _short(address):
    return f"{address[:6]}...{address[-4:]}" if address else ""


def _passphrase(first_use):
    pw = os.environ.get("NIMBUS_WALLET_PASSPHRASE")
    if pw: return pw
    pw = getpass.getpass("Wallet passphrase: ")
    if first_use and getpass.getpass("Confirm passphrase: ") != pw:
        raise SystemExit("Passphrases do not match")
    return pw


def _open(args):
    kv = JsonFileStore(args.wallet_dir)
    first_use = not WalletStorage(kv).has_accounts()
    config = WalletStorage(kv).load_config()
    if args.rpc_url: config["rpc_url"] = args.rpc_url
    wm = WalletManager(kv=kv, passphrase=_passphrase(first_use), config=config,
                       price_oracle=PriceOracle(config.get("price_currency", "usd")))
    return wm.open()


def _confirm(prompt, assume_yes):
    return assume_yes or input(f"{prompt} [y/N] ").strip().lower() in ("y", "yes")


# ── Accounts ──────────────────────────────────────────────────

def _create(wm, args):
    acct = wm.create_account(args.name)
    print(f"Created {acct.name}: {acct.address}")
    print("\nWrite these 12 words down in order. They are the only way to recover this account:\n")
    print("  " + acct.mnemonic)
    return 0


def _import(wm, args):
    method = "private_key" if args.private_key else "mnemonic"
    prompt = "Private key: " if args.private_key else "Seed phrase: "
    acct = wm.import_account(args.name, getpass.getpass(prompt), method)
    print(f"Imported {acct.name}: {acct.address}")
    return 0


def _list(wm, args):
    if not wm.accounts:
        print("No accounts. Use 'create' or 'import'.")
        return 0
    for i, a in enumerate(wm.accounts):
        mark = "*" if i == wm.store.active_index else " "
        kind = "imported" if a.imported else "created"
        print(f"{mark} [{i}] {a.name:<20} {a.address}  ({kind} {a.created_at[:10]})")
    return 0


def _switch(wm, args):
    acct = wm.switch_account(args.index)
    print(f"Active account: {acct.name} ({acct.address})")
    return 0


def _delete(wm, args):
    a = wm.accounts[args.index] if 0 <= args.index < len(wm.accounts) else None
    if a and not _confirm(f"Delete {a.name} ({a.address})? Its keys are gone unless backed up.", args.yes):
        print("Cancelled.")
        return 1
    removed = wm.delete_account(args.index)
    print(f"Deleted {removed.name} ({removed.address})")
    return 0


# ── Balance / send ────────────────────────────────────────────

async def _balance(wm, args):
    await wm.refresh_balance()
    if wm.balance is None:
        print("Balance unavailable (provider did not answer)")
        return 1
    fiat = await wm.fiat_value(Decimal(wm.balance_eth))
    cur = wm.config.get("price_currency", "usd").upper()
    extra = f"  (~{fiat:.2f} {cur})" if fiat is not None else ""
    print(f"{wm.active_account.name}: {wm.balance_eth} ETH{extra}")
    return 0


async def _fee(wm, args):
    _, display = await wm.estimate_fee(args.fee_level)
    print(f"Estimated network fee: {display}")
    return 0


async def _send(wm, args):
    await wm.refresh_balance()
    to, wei = wm.engine.validate(args.recipient, args.amount)
    _, fee = await wm.estimate_fee(args.fee_level)
    print(f"From:   {wm.active_account.address}\nTo:     {to}\nAmount: {args.amount} ETH\nFee:    {fee}")
    if not _confirm("Send this transaction?", args.yes):
        print("Cancelled.")
        return 1
    res = await wm.send(to, args.amount, args.fee_level)
    print(f"Submitted: {res.tx_hash}")
    if res.explorer_url: print(res.explorer_url)
    return 0


async def _history(wm, args):
    res = await wm.refresh_history()
    if res is None: return 1
    if res.degraded:
        print(f"Warning: {'/'.join(res.failed)} transfers could not be loaded; list is partial.", file=sys.stderr)
    if not len(res):
        print("No transactions found")
        return 0
    for r in res.records[:args.limit]:
        sign, label = ("-", "To:  ") if r.direction == "sent" else ("+", "From:")
        print(f"#{r.block_number:<9} {r.direction:<8} {label} {_short(r.counterparty)}  {sign}{r.amount} {r.asset}  {r.hash}")
    return 0


# ── Tokens ────────────────────────────────────────────────────

async def _tokens_add(wm, args):
    tok = await wm.add_token(args.address)
    print(f"Added {tok.symbol} ({tok.name}, {tok.decimals} decimals) at {tok.address}")
    print(f"Balance: {wm.tokens.balances.get(tok.address, '0')} {tok.symbol}")
    return 0


def _tokens_remove(wm, args):
    tok = wm.remove_token(args.address)
    print(f"Removed {tok.symbol} ({tok.address})" if tok else "Token was not in the list")
    return 0


async def _tokens_list(wm, args):
    reg = wm.tokens
    if not reg.tokens:
        print("No tokens added yet")
        return 0
    balances = await wm.refresh_tokens() if args.refresh else reg.balances
    for t in reg.tokens:
        bal = (balances or {}).get(t.address, "-")
        print(f"{t.symbol:<8} {bal:>24}  {t.name}  {t.address}")
    return 0


async def _tokens_refresh(wm, args):
    balances = await wm.refresh_tokens()
    if balances is None: return 1
    for t in wm.tokens.tokens:
        print(f"{t.symbol:<8} {balances.get(t.address, '0'):>24}  {t.address}")
    return 0


# ── Faucet ────────────────────────────────────────────────────

async def _faucet_info(wm, args):
    info = await wm.faucet().info()
    print(f"Faucet:     {info.faucet}")
    print(f"Token:      {info.token or 'unknown'} ({info.symbol})")
    print(f"Balance:    {info.balance if info.balance is not None else 'unknown'} {info.symbol}")
    print(f"Per claim:  {info.withdrawal_amount if info.withdrawal_amount is not None else 'unknown'} {info.symbol}")
    if info.lock_time is not None:
        print(f"Cooldown:   {max(1, -(-info.lock_time // 60))} minute(s)")
    return 0


async def _faucet_request(wm, args):
    res = await wm.faucet().request_tokens()
    print(f"Faucet request submitted: {res.tx_hash}")
    if res.explorer_url: print(res.explorer_url)
    return 0


def build_parser():
    parser = argparse.ArgumentParser(description="Nimbus non-custodial Ethereum wallet")
    parser.add_argument("--wallet-dir", default=None, help=f"Wallet directory (default: {default_wallet_dir()})")
    parser.add_argument("--rpc-url", default=None, help="JSON-RPC endpoint (overrides config)")
    parser.add_argument("-v", "--verbose", action="count", default=0, help="More logging (-vv for debug)")
    sub = parser.add_subparsers(dest="command")

    p = sub.add_parser("create", help="Create a new account from a fresh seed phrase")
    p.add_argument("--name", default=None)
    p.set_defaults(func=_create)

    p = sub.add_parser("import", help="Import an account from a seed phrase or private key")
    p.add_argument("--name", default=None)
    p.add_argument("--private-key", action="store_true", help="Import a raw private key instead of a seed phrase")
    p.set_defaults(func=_import)

    sub.add_parser("list", help="List accounts").set_defaults(func=_list)

    p = sub.add_parser("switch", help="Make another account active")
    p.add_argument("index", type=int)
    p.set_defaults(func=_switch)

    p = sub.add_parser("delete", help="Delete an account")
    p.add_argument("index", type=int)
    p.add_argument("-y", "--yes", action="store_true")
    p.set_defaults(func=_delete)

    sub.add_parser("balance", help="Show the active account's ETH balance").set_defaults(func=_balance)

    p = sub.add_parser("fee", help="Estimate the network fee for a transfer")
    p.add_argument("--fee-level", choices=("low", "medium", "high"), default="medium")
    p.set_defaults(func=_fee)

    p = sub.add_parser("send", help="Send ETH from the active account")
    p.add_argument("recipient")
    p.add_argument("amount", help="Amount in ETH")
    p.add_argument("--fee-level", choices=("low", "medium", "high"), default="medium")
    p.add_argument("-y", "--yes", action="store_true")
    p.set_defaults(func=_send)

    p = sub.add_parser("history", help="Show transfer history")
    p.add_argument("--limit", type=int, default=50)
    p.set_defaults(func=_history)

    tokens = sub.add_parser("tokens", help="Manage the token watch list").add_subparsers(dest="tokens_command")
    p = tokens.add_parser("add"); p.add_argument("address"); p.set_defaults(func=_tokens_add)
    p = tokens.add_parser("remove"); p.add_argument("address"); p.set_defaults(func=_tokens_remove)
    p = tokens.add_parser("list"); p.add_argument("--refresh", action="store_true", help="Re-read balances")
    p.set_defaults(func=_tokens_list)
    tokens.add_parser("refresh", help="Re-read all token balances").set_defaults(func=_tokens_refresh)

    faucet = sub.add_parser("faucet", help="Test-token faucet").add_subparsers(dest="faucet_command")
    faucet.add_parser("info").set_defaults(func=_faucet_info)
    faucet.add_parser("request").set_defaults(func=_faucet_request)
    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return 0
    level = {0: None, 1: logging.INFO}.get(args.verbose, logging.DEBUG)
    logging.basicConfig(level=level or logging.WARNING, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    try:
        wm = _open(args)
        if level is None:
            logging.getLogger().setLevel(str(wm.config.get("log_level", "WARNING")).upper())
        res = args.func(wm, args)
        return asyncio.run(res) if asyncio.iscoroutine(res) else res
    except WalletError as e:
        logger.debug("command %s failed", args.command, exc_info=True)
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
