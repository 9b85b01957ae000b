"""
Interactive setup wizard for a sync target.

Prompts for the target key, webhook URL, api key and schedule, then saves
the configuration. The api key is read without echo and stored encrypted
with FIELDSYNC_ENCRYPTION_KEY; if that variable is unset the wizard
prints a freshly generated key to put in .env and stops.

Usage:
    python -m fieldsync setup
    python -m fieldsync.scripts.setup   (direct invocation)
"""
import getpass
import sys

from fieldsync.config import get_settings
from fieldsync.crypto import CredentialCipher
from fieldsync.models.sync import SyncFrequency


def _ask_bool(prompt: str, default: bool) -> bool:
    suffix = "[Y/n]" if default else "[y/N]"
    answer = input(f"{prompt} {suffix} ").strip().lower()
    if not answer:
        return default
    return answer == "y"


def run_setup() -> None:
    from fieldsync.db.engine import get_engine
    from fieldsync.store.registry import TargetRegistry

    settings = get_settings()

    print("\nField Sync: target setup\n")

    if not settings.encryption_key:
        print("FIELDSYNC_ENCRYPTION_KEY is not set; api keys cannot be stored.")
        print("Add this line to your .env and re-run setup:\n")
        print(f"    FIELDSYNC_ENCRYPTION_KEY={CredentialCipher.generate_key()}\n")
        sys.exit(1)

    registry = TargetRegistry(get_engine())

    target = input("Target system key (e.g. hr_system, kwantu): ").strip()
    if not target:
        print("Error: target system cannot be empty.")
        sys.exit(1)

    existing = registry.get(target)
    if existing:
        print(f"An existing configuration for '{target}' was found.")
        if not _ask_bool("Overwrite it?", False):
            print("Setup cancelled. Existing configuration unchanged.")
            sys.exit(0)

    webhook_url = input("Webhook URL: ").strip()
    api_key = getpass.getpass("API key (leave empty for none): ")

    choices = ", ".join(f.value for f in SyncFrequency)
    frequency = input(f"Sync frequency ({choices}) [daily]: ").strip().lower() or "daily"
    try:
        frequency = SyncFrequency(frequency)
    except ValueError:
        print(f"Error: frequency must be one of {choices}.")
        sys.exit(1)

    auto_sync = _ask_bool("Dispatch automatically on schedule?", frequency != SyncFrequency.MANUAL)
    enabled = _ask_bool("Enable this target now?", True)

    saved = registry.upsert(
        target,
        enabled=enabled,
        auto_sync=auto_sync,
        sync_frequency=frequency,
        webhook_url=webhook_url,
        api_key=api_key,
        updated_by="setup",
    )

    print(f"\nSaved configuration for '{saved.target_system}'.")
    print(f"   enabled={saved.enabled} auto_sync={saved.auto_sync} frequency={saved.sync_frequency.value}")
    print(f"   api key stored: {'yes (encrypted)' if saved.has_api_key else 'no'}\n")


if __name__ == "__main__":
    run_setup()
