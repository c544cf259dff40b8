"""
Command-line interface for the encrypted vault.

Provides text-based menu for:
- User registration, login and password change
- File upload with client-side encryption
- File download with decryption
- Folders, sharing with users and share links
- Opening a share link anonymously

The local JSON record store and blob directory stand in for the server;
they only ever receive ciphertext and wrapped keys.
"""

import asyncio
import logging
import mimetypes
from datetime import timedelta
from getpass import getpass
from pathlib import Path
from typing import List, Optional

from accounts.manager import AccountManager, Session
from accounts.storage import JSONStorage
from cipher.errors import VaultError
from config import Settings, get_settings
from storage.file_manager import FileManager
from storage.models import NodeInfo
from storage.records import JSONRecordStore, LocalContentStore
from storage.sharing import KEEP


class App:
    def __init__(self, settings: Settings):
        root = Path(settings.VAULT_ROOT)
        self.settings = settings
        self.accounts = AccountManager(JSONStorage(settings.USERS_FILE), settings=settings)
        self.records = JSONRecordStore(root / "records.json")
        self.content = LocalContentStore(root / "blobs")
        self.session: Optional[Session] = None
        self.files: Optional[FileManager] = None

    def start_session(self, session: Session) -> None:
        self.session = session
        self.files = FileManager(self.records, self.content, session, self.accounts, self.settings)

    def end_session(self) -> None:
        if self.files is not None:
            self.files.close()
        self.session = None
        self.files = None


def print_menu(logged_in: bool = False, username: str = "") -> None:
    print("\n" + "=" * 50)
    if logged_in:
        print(f"  🔐 Encrypted Vault - Logged in as: {username}")
    else:
        print("  🔐 Encrypted Vault")
    print("=" * 50)

    if not logged_in:
        print("  1) Sign up")
        print("  2) Log in")
        print("  3) Open a share link")
        print("  0) Quit")
    else:
        print("  1) Upload file")
        print("  2) Download file")
        print("  3) List my files")
        print("  4) List shared files")
        print("  5) New folder")
        print("  6) Share with a user")
        print("  7) Create share link")
        print("  8) Revoke a share")
        print("  9) Delete a file")
        print(" 10) Change password")
        print(" 11) Log out")
        print(" 12) Update a share link")
        print("  0) Quit")
    print("=" * 50)


def _print_nodes(nodes: List[NodeInfo], start: int = 1) -> None:
    for i, info in enumerate(nodes, start):
        icon = "📁" if info.is_directory else "📄"
        size = "" if info.is_directory else f" ({info.node.size:,} bytes)"
        print(f"   {i}. {icon} {info.name}{size}")


def _pick(nodes: List[NodeInfo], prompt: str) -> Optional[NodeInfo]:
    if not nodes:
        print("   No files available")
        return None
    _print_nodes(nodes)
    try:
        choice = int(input(prompt)) - 1
    except ValueError:
        print("❌ Invalid input")
        return None
    if choice < 0 or choice >= len(nodes):
        print("❌ Invalid selection")
        return None
    return nodes[choice]


def handle_signup(app: App) -> None:
    print("\n📝 Create New Account")
    username = input("Username: ").strip()
    if not username:
        print("❌ Username cannot be empty")
        return

    password = getpass("Password: ")
    if len(password) < 6:
        print("❌ Password must be at least 6 characters")
        return

    confirm = getpass("Confirm password: ")
    if password != confirm:
        print("❌ Passwords don't match")
        return

    try:
        session = app.accounts.register(username, password)
    except ValueError as e:
        print(f"❌ Error: {e}")
        return
    print(f"✅ Account created: {session.user.username}")
    print(f"   User ID: {session.user_id}")
    print("   RSA key pair generated; private key stored encrypted")
    app.start_session(session)


def handle_login(app: App) -> None:
    print("\n🔑 Login")
    username = input("Username: ").strip()
    password = getpass("Password: ")
    try:
        session = app.accounts.login(username, password)
    except (VaultError, ValueError):
        print("❌ Invalid credentials")
        return
    print(f"✅ Welcome back, {session.user.username}!")
    app.start_session(session)


async def handle_upload(app: App) -> None:
    print("\n📤 Upload File")
    filepath = input("File path: ").strip()
    path = Path(filepath).expanduser()
    if not filepath or not path.is_file():
        print(f"❌ File not found: {filepath}")
        return

    folders = [n for n in await app.files.list_directory() if n.is_directory]
    parent_id = None
    if folders and input("Upload into a folder? (yes/no): ").strip().lower() == "yes":
        folder = _pick(folders, "Select folder: ")
        if folder is None:
            return
        parent_id = folder.node.id

    mime_type, _ = mimetypes.guess_type(path.name)
    node = await app.files.upload_file(path.read_bytes(), path.name, mime_type, parent_id)
    print("\n✅ File uploaded successfully!")
    print(f"   🔑 File ID: {node.id}")
    print(f"   📊 Encrypted size: {node.size:,} bytes")
    print("   🔒 Encrypted with AES-256-GCM")


async def handle_download(app: App) -> None:
    print("\n📥 Download File")
    nodes = await app.files.list_directory() + await app.files.list_shared_with_me()
    selected = _pick(nodes, "\nSelect file number: ")
    while selected is not None and selected.is_directory:
        children = await app.files.list_directory(selected.node.id)
        selected = _pick(children, f"\nSelect file in {selected.name}: ")
    if selected is None:
        return
    dest = input("Destination folder (Enter for ~/Downloads): ").strip() or "~/Downloads"
    target = await app.files.download_file(selected.node.id, Path(dest))
    print("\n✅ File downloaded successfully!")
    print(f"   📁 Saved to: {target}")


async def handle_list_files(app: App) -> None:
    print("\n📁 My Files")
    nodes = await app.files.list_directory()
    if not nodes:
        print("   No files uploaded yet")
        return
    _print_nodes(nodes)


async def handle_list_shared(app: App) -> None:
    print("\n📥 Files Shared With Me")
    nodes = await app.files.list_shared_with_me()
    if not nodes:
        print("   No files shared with you")
        return
    _print_nodes(nodes)


async def handle_new_folder(app: App) -> None:
    name = input("\nFolder name: ").strip()
    if not name:
        print("❌ Folder name cannot be empty")
        return
    node = await app.files.create_directory(name)
    print(f"✅ Folder created ({node.id})")


async def handle_share(app: App) -> None:
    print("\n🔗 Share With a User")
    selected = _pick(await app.files.list_directory(), "\nSelect file to share: ")
    if selected is None:
        return
    others = app.accounts.get_other_users(app.session.user.username)
    if not others:
        print("   No other users to share with")
        return
    print(f"\nAvailable users: {', '.join(u.username for u in others)}")
    username = input("Share with: ").strip()
    edit = input("Allow editing? (yes/no): ").strip().lower() == "yes"
    await app.files.share_with_user(selected.node.id, username, edit)
    print(f"✅ {selected.name} shared with {username}")


async def handle_create_link(app: App) -> None:
    print("\n🌐 Create Share Link")
    selected = _pick(await app.files.list_directory(), "\nSelect file: ")
    if selected is None:
        return
    password = getpass("Link password (Enter for none): ") or None
    hours = input("Expires in hours (Enter for never): ").strip()
    expires_in = timedelta(hours=float(hours)) if hours else None
    link, secret = await app.files.create_link(selected.node.id, password, expires_in)
    print("\n✅ Link created. Keep the secret; it cannot be shown again.")
    print(f"   Link ID: {link.link_id}")
    print(f"   Secret:  {secret}")
    if link.expires_at:
        print(f"   Expires: {link.expires_at}")


async def handle_update_link(app: App) -> None:
    print("\n⏱️ Update Share Link")
    selected = _pick(await app.files.list_directory(), "\nSelect file: ")
    if selected is None:
        return
    links = app.files.shares.list_links(selected.node.id)
    if not links:
        print("   No links for this file")
        return
    for link in links:
        print(f"   link: {link.link_id} (edit={link.edit_permission}, expires={link.expires_at or 'never'})")
    link_id = input("Link ID: ").strip()
    edit = input("Allow editing? (yes/no): ").strip().lower() == "yes"
    hours = input("Expires in hours (Enter to keep, 0 for never): ").strip()
    if not hours:
        expires_in = KEEP
    elif float(hours) == 0:
        expires_in = None
    else:
        expires_in = timedelta(hours=float(hours))
    link = app.files.update_link(link_id, edit_permission=edit, expires_in=expires_in)
    print(f"✅ Link updated (edit={link.edit_permission}, expires={link.expires_at or 'never'})")


async def handle_revoke(app: App) -> None:
    print("\n🚫 Revoke a Share")
    selected = _pick(await app.files.list_directory(), "\nSelect file: ")
    if selected is None:
        return
    grants = app.files.shares.list_grants(selected.node.id)
    links = app.files.shares.list_links(selected.node.id)
    for g in grants:
        user = app.accounts.get_user_by_id(g.user_id)
        print(f"   user: {user.username if user else g.user_id} (edit={g.edit_permission})")
    for link in links:
        print(f"   link: {link.link_id} (password={link.password_protected}, expires={link.expires_at or 'never'})")
    target = input("Username or link ID to revoke: ").strip()
    if any(link.link_id == target for link in links):
        app.files.revoke_link(target)
    else:
        app.files.revoke_user_share(selected.node.id, target)
    print("✅ Access revoked")


async def handle_delete(app: App) -> None:
    print("\n🗑️ Delete a File")
    selected = _pick(await app.files.list_directory(), "\nSelect file to delete: ")
    if selected is None:
        return
    confirm = input(f"Delete '{selected.name}'? (yes/no): ").strip().lower()
    if confirm != "yes":
        print("   Cancelled")
        return
    app.files.delete_file(selected.node.id)
    print("✅ File deleted")


def handle_change_password(app: App) -> None:
    print("\n🔏 Change Password")
    old = getpass("Current password: ")
    new = getpass("New password: ")
    if len(new) < 6 or new != getpass("Confirm new password: "):
        print("❌ New password too short or does not match")
        return
    try:
        session = app.accounts.change_password(app.session, old, new)
    except VaultError:
        print("❌ Invalid credentials")
        return
    app.session = session
    app.files.session = session
    print("✅ Password changed; private key re-wrapped")


async def handle_open_link(app: App) -> None:
    print("\n🌐 Open Share Link")
    link_id = input("Link ID: ").strip()
    secret = input("Secret: ").strip()
    password = getpass("Password (Enter if none): ") or None
    files = FileManager(app.records, app.content, settings=app.settings)
    try:
        info = await files.unlock_link(link_id, secret, password)
        if info.is_directory:
            print(f"\n📁 {info.name}")
            _print_nodes(await files.list_directory(info.node.id))
            return
        target = await files.download_file(info.node.id, Path("~/Downloads"))
        print(f"✅ Saved to: {target}")
    finally:
        files.close()


LOGGED_IN_ACTIONS = {
    "1": handle_upload,
    "2": handle_download,
    "3": handle_list_files,
    "4": handle_list_shared,
    "5": handle_new_folder,
    "6": handle_share,
    "7": handle_create_link,
    "8": handle_revoke,
    "9": handle_delete,
    "12": handle_update_link,
}


def run_action(action, app: App) -> None:
    try:
        asyncio.run(action(app))
    except VaultError as e:
        print(f"❌ {e}")
    except (OSError, ValueError) as e:
        print(f"❌ Failed: {e}")


def main():
    settings = get_settings()
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app = App(settings)

    print("\n🔐 Encrypted Vault")
    print("   Zero-knowledge • Encrypted • Shareable\n")

    while True:
        print_menu(logged_in=app.session is not None,
                   username=app.session.user.username if app.session else "")
        choice = input("> ").strip()

        if app.session is None:
            if choice == "1":
                handle_signup(app)
            elif choice == "2":
                handle_login(app)
            elif choice == "3":
                run_action(handle_open_link, app)
            elif choice == "0":
                print("\nGoodbye! 👋")
                break
            else:
                print("❌ Invalid choice")
        else:
            if choice in LOGGED_IN_ACTIONS:
                run_action(LOGGED_IN_ACTIONS[choice], app)
            elif choice == "10":
                handle_change_password(app)
            elif choice == "11":
                print(f"\n👋 Logged out from {app.session.user.username}")
                app.end_session()
            elif choice == "0":
                print("\nGoodbye! 👋")
                break
            else:
                print("❌ Invalid choice")


if __name__ == "__main__":
    main()
