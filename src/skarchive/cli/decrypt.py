"""Recovery command: peel the encryption layers off an archived artifact."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Optional

import click

from ._common import ARCHIVE_CONFIG, EXIT_CONFIG, EXIT_PARTIAL, console, err_console, load_or_exit
from ..errors import ConfigError, KeyStoreError


def register_decrypt_commands(main: click.Group) -> None:
    """Register the decrypt command."""

    @main.command("decrypt")
    @click.argument("ciphertext", type=click.Path(exists=True, dir_okay=False))
    @click.option("--config", "-c", "config_path", default=ARCHIVE_CONFIG, type=click.Path(), help="Config file.")
    @click.option(
        "--key", "-k", "keys", multiple=True, required=True,
        help="Secret key id, one per layer, outermost layer first.",
    )
    @click.option("--output", "-o", type=click.Path(dir_okay=False), required=True, help="Where to write the plaintext.")
    @click.option("--signature", type=click.Path(exists=True, dir_okay=False), default=None, help="Detached signature to check.")
    @click.option("--signer", default=None, help="Key id the signature must come from.")
    def decrypt_cmd(
        ciphertext: str,
        config_path: str,
        keys: tuple[str, ...],
        output: str,
        signature: Optional[str],
        signer: Optional[str],
    ):
        """Recover an artifact by peeling one layer per --key.

        Layers come off in reverse of how they were applied: the first
        --key must open the outermost layer. Passphrases are prompted.

        Examples:

            skarchive decrypt x.ttyrec.gpg -k OUTER_KEY -k INNER_KEY -o x.ttyrec
        """
        from ..encryption import peel
        from ..keystore import create_keystore

        config = load_or_exit(config_path)
        try:
            keystore = create_keystore(config.keystore, timeout=config.operation_timeout_seconds)
        except ConfigError as exc:
            err_console.print(f"[bold red]Configuration error:[/] {exc}")
            sys.exit(EXIT_CONFIG)

        pairs = []
        for key_id in keys:
            passphrase = click.prompt(
                f"Passphrase for {key_id}", default="", hide_input=True, show_default=False,
            )
            pairs.append((key_id, passphrase))

        try:
            plaintext = peel(keystore, Path(ciphertext).read_bytes(), pairs)
        except KeyStoreError as exc:
            err_console.print(f"[bold red]Decryption failed:[/] {exc}")
            sys.exit(EXIT_PARTIAL)

        if signature:
            signer_id = signer or (config.signing_key.key_id if config.signing_key else None)
            if signer_id is None:
                err_console.print("[bold red]No signer given and no signing key configured.[/]")
                sys.exit(EXIT_CONFIG)
            if not keystore.verify(plaintext, Path(signature).read_bytes(), signer_id):
                err_console.print(f"[bold red]Signature by {signer_id} does not verify.[/] Plaintext not written.")
                sys.exit(EXIT_PARTIAL)
            console.print(f"[green]Signature by {signer_id} verified[/]")

        Path(output).write_bytes(plaintext)
        console.print(f"[green]Recovered[/] {len(plaintext)} bytes -> [cyan]{output}[/]")
