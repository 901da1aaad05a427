"""Catalogue of the POSIX shell scripts vhostctl runs on managed nodes.

Scripts take their inputs as positional arguments (quoted by the transport) or,
for secrets, as shell assignments prepended with :func:`with_assignments` so
they never appear in the remote process list. Every script is safe to re-run:
mutating scripts check before acting and report what they changed.

Each script starts with a ``# vhostctl: <name>`` header naming it in logs.
"""
from __future__ import annotations

import re
import shlex
from collections.abc import Mapping

_HEADER = re.compile(r"^# vhostctl: (\S+)$", re.MULTILINE)


def script_name(script: str) -> str:
    """Return the catalogue name embedded in *script* (``"adhoc"`` when absent)."""
    match = _HEADER.search(script)
    return match.group(1) if match else "adhoc"


def with_assignments(script: str, values: Mapping[str, str]) -> str:
    """Prefix *script* with quoted shell variable assignments."""
    lines = [f"{name}={shlex.quote(value)}" for name, value in values.items()]
    return "\n".join([*lines, script])


# ---------------------------------------------------------------------------
# Discovery probes
# ---------------------------------------------------------------------------

OS_RELEASE = """\
# vhostctl: os-release
cat /etc/os-release
"""

# prints the lowercased FQDN; falls back to /etc/hosts, reverse DNS, then the short name
SERVER_FQDN = """\
# vhostctl: server-fqdn
name=$(hostname -f 2>/dev/null || true)
case "$name" in
    *.*) ;;
    *)
        short=$(hostname -s 2>/dev/null || hostname)
        name=$(awk -v short="$short" '$1 !~ /^#/ {for (i = 2; i <= NF; i++) if ($i ~ /\\./ && index($i, short ".") == 1) {print $i; exit}}' /etc/hosts 2>/dev/null || true)
        if [ -z "$name" ]; then
            addr=$(hostname -I 2>/dev/null | awk '{print $1}' || true)
            if [ -n "$addr" ]; then
                name=$(getent hosts "$addr" | awk '{print $2; exit}' || true)
            fi
        fi
        case "$name" in
            *.*) ;;
            *) name="$short" ;;
        esac
        ;;
esac
printf '%s\\n' "$name" | tr 'A-Z' 'a-z'
"""

# $1 = UID floor (exclusive)
LIST_UIDS = """\
# vhostctl: list-uids
getent passwd | awk -F: -v floor="$1" '$3 > floor && $3 < 60000 {print $3}' | sort -n
"""

# ---------------------------------------------------------------------------
# Validation probes
# ---------------------------------------------------------------------------

# $1 = path; prints "user:uid:gid:group" or "missing"
STAT_OWNER = """\
# vhostctl: stat-owner
if [ -e "$1" ]; then
    stat -c '%U:%u:%g:%G' "$1"
else
    echo missing
fi
"""

# $1 = base path; prints "name:uid:gid" of a u<N> user whose home is $1
FIND_TENANT_USER = """\
# vhostctl: find-tenant-user
getent passwd | awk -F: -v home="$1" '!found && $1 ~ /^u[0-9]+$/ && $6 == home {print $1 ":" $3 ":" $4; found = 1}'
"""

# $1 = user name; prints the uid or "missing"
USER_UID = """\
# vhostctl: user-uid
id -u "$1" 2>/dev/null || echo missing
"""

# $1 = user name, $2 = base path; prints "user=<yes|no>" and "base=<yes|no>"
FOOTPRINT = """\
# vhostctl: footprint
if id -u "$1" >/dev/null 2>&1; then echo user=yes; else echo user=no; fi
if [ -d "$2" ]; then echo base=yes; else echo base=no; fi
"""

# $@ = directories; prints "present|missing<TAB>path"
DIRS_EXIST = """\
# vhostctl: dirs-exist
for path in "$@"; do
    if [ -d "$path" ]; then
        printf 'present\\t%s\\n' "$path"
    else
        printf 'missing\\t%s\\n' "$path"
    fi
done
"""

# $@ = files; prints "present|missing<TAB>path"
FILES_EXIST = """\
# vhostctl: files-exist
for path in "$@"; do
    if [ -f "$path" ]; then
        printf 'present\\t%s\\n' "$path"
    else
        printf 'missing\\t%s\\n' "$path"
    fi
done
"""

# $@ = paths; prints "<octal mode>|missing<TAB>path"
PATH_MODES = """\
# vhostctl: path-modes
for path in "$@"; do
    if [ -e "$path" ]; then
        printf '%s\\t%s\\n' "$(stat -c '%a' "$path")" "$path"
    else
        printf 'missing\\t%s\\n' "$path"
    fi
done
"""

# $@ = service names; prints "active|inactive<TAB>service"
SERVICE_STATUS = """\
# vhostctl: service-status
for svc in "$@"; do
    if command -v systemctl >/dev/null 2>&1; then
        if systemctl is-active --quiet "$svc"; then state=active; else state=inactive; fi
    elif rc-service "$svc" status >/dev/null 2>&1; then
        state=active
    else
        state=inactive
    fi
    printf '%s\\t%s\\n' "$state" "$svc"
done
"""

# ---------------------------------------------------------------------------
# Repair and provisioning actions
# ---------------------------------------------------------------------------

# $1 = user, $2 = uid, $3 = gid, $4 = shell, $5 = home, $6 = comment; UPASS assigned by caller
CREATE_USER = """\
# vhostctl: create-user
user="$1"; uid="$2"; gid="$3"; shell="$4"; home="$5"; comment="$6"
if current=$(id -u "$user" 2>/dev/null); then
    if [ "$current" != "$uid" ]; then
        echo "user $user exists with uid $current, expected $uid" >&2
        exit 3
    fi
    echo "unchanged $user"
    exit 0
fi
group_gid=$(getent group "$user" | cut -d: -f3 || true)
if [ -n "$group_gid" ]; then
    if [ "$group_gid" != "$gid" ]; then
        echo "group $user exists with gid $group_gid, expected $gid" >&2
        exit 3
    fi
else
    holder=$(getent group "$gid" | cut -d: -f1 || true)
    if [ -n "$holder" ]; then
        echo "gid $gid is already used by group $holder" >&2
        exit 3
    fi
    groupadd -g "$gid" "$user"
fi
if [ "$uid" = "1000" ]; then
    getent group sudo >/dev/null 2>&1 || groupadd -r sudo
    useradd -M -g "$gid" -G sudo,adm -s "$shell" -u "$uid" -d "$home" -c "$comment" "$user"
else
    useradd -M -g "$gid" -s "$shell" -u "$uid" -d "$home" -c "$comment" "$user"
fi
if [ -n "${UPASS:-}" ]; then
    printf '%s:%s\\n' "$user" "$UPASS" | chpasswd
fi
echo "created $user"
"""

# $1 = base path, $2 = web path, $3 = mail path
CREATE_LAYOUT = """\
# vhostctl: create-layout
for path in "$1" "$3" "$2" "$2/app" "$2/app/public" "$2/log" "$2/run"; do
    if [ ! -d "$path" ]; then
        mkdir -p "$path"
        printf 'created\\t%s\\n' "$path"
    fi
done
"""

# $1 = base path, $2 = web path, $3 = uid, $4 = gid, $5 = web group
APPLY_OWNERSHIP = """\
# vhostctl: apply-ownership
upath="$1"; wpath="$2"; uid="$3"; gid="$4"; web_group="$5"
group_name=$(getent group "$web_group" | cut -d: -f1 || true)
if [ -z "$group_name" ]; then
    echo "web group $web_group does not exist" >&2
    exit 3
fi
web_group="$group_name"
chown -R "$uid:$gid" "$upath"
chmod 755 "$upath"
if [ -d "$wpath" ]; then
    chown -R "$uid:$web_group" "$wpath"
    chmod 755 "$wpath"
fi
for path in "$wpath/app" "$wpath/app/public"; do
    if [ -d "$path" ]; then chmod 755 "$path"; fi
done
for path in "$wpath/log" "$wpath/run"; do
    if [ -d "$path" ]; then chmod 750 "$path"; fi
done
echo "BASE_OWNER=$uid:$gid"
echo "WEB_OWNER=$uid:$web_group"
"""

# $1 = web path
TIGHTEN_SECURITY = """\
# vhostctl: tighten-security
if [ -d "$1" ]; then chmod 755 "$1"; fi
for path in "$1/log" "$1/run"; do
    if [ -d "$path" ]; then chmod 750 "$path"; fi
done
"""

# $1 = path, $2 = octal mode, $3 = content; existing files are left untouched
WRITE_FILE = """\
# vhostctl: write-file
path="$1"; mode="$2"; content="$3"
if [ -f "$path" ]; then
    echo "unchanged $path"
    exit 0
fi
mkdir -p "$(dirname "$path")"
tmp="$path.vhostctl.$$"
printf '%s' "$content" > "$tmp"
chmod "$mode" "$tmp"
mv "$tmp" "$path"
echo "written $path"
"""

# $1 = action, remaining = service names
SERVICE_CONTROL = """\
# vhostctl: service-control
action="$1"; shift
failed=0
for svc in "$@"; do
    if command -v systemctl >/dev/null 2>&1; then
        if systemctl "$action" "$svc" >/dev/null 2>&1; then ok=1; else ok=0; fi
    elif rc-service "$svc" "$action" >/dev/null 2>&1; then
        ok=1
    else
        ok=0
    fi
    if [ "$ok" = 1 ]; then
        printf 'ok\\t%s\\n' "$svc"
    else
        printf 'failed\\t%s\\n' "$svc"
        failed=1
    fi
done
exit "$failed"
"""

# ---------------------------------------------------------------------------
# Migration
# ---------------------------------------------------------------------------

# $1 = base path, $2 = archive directory, $3 = timestamp
BACKUP_ARCHIVE = """\
# vhostctl: backup-archive
upath="$1"; archive_dir="$2"; stamp="$3"
archive="$archive_dir/pre-migration-$stamp.tar.gz"
mkdir -p "$archive_dir"
chmod 700 "$archive_dir"
rc=0
tar czf "$archive" -C "$upath" --exclude='./web/run/*.sock' . || rc=$?
if [ "$rc" -gt 1 ]; then
    rm -f "$archive"
    echo "tar failed with exit code $rc" >&2
    exit "$rc"
fi
echo "ARCHIVE_PATH=$archive"
"""

# $1 = base path, $2 = web path; moves only what the current layout lacks
STRUCTURAL_MIGRATE = """\
# vhostctl: structural-migrate
upath="$1"; wpath="$2"
changes=""
note() { changes="${changes:+$changes,}$1"; }
if [ ! -d "$wpath/app" ]; then
    mkdir -p "$wpath/app/public"
    note created_web_app_dir
fi
if [ -d "$upath/var/log" ] && [ ! -e "$wpath/log" ]; then
    mv "$upath/var/log" "$wpath/log"
    note moved_var_log
fi
if [ -d "$upath/var/run" ] && [ ! -e "$wpath/run" ]; then
    mv "$upath/var/run" "$wpath/run"
    note moved_var_run
fi
if [ ! -f "$wpath/app/public/index.html" ] && [ ! -f "$wpath/app/public/index.php" ]; then
    moved=0
    for entry in "$wpath"/* "$wpath"/.[!.]*; do
        [ -e "$entry" ] || continue
        case "${entry##*/}" in
            app|log|run) continue ;;
        esac
        mv "$entry" "$wpath/app/public/"
        moved=$((moved + 1))
    done
    if [ "$moved" -gt 0 ]; then note restructured_web_content; fi
fi
echo "CHANGES=$changes"
"""

# $1 = web path
VERIFY_LAYOUT = """\
# vhostctl: verify-layout
wpath="$1"
checks=""
note() { checks="${checks:+$checks,}$1"; }
if [ -d "$wpath/app/public" ]; then note app_public_exists; fi
if [ -d "$wpath/log" ]; then note log_dir_exists; fi
if [ -d "$wpath/run" ]; then note run_dir_exists; fi
if [ -f "$wpath/app/public/index.html" ] || [ -f "$wpath/app/public/index.php" ]; then
    note index_file_exists
fi
echo "CHECKS=$checks"
"""

# $1 = base path, $2 = archive path, $3 = timestamp
RESTORE_ARCHIVE = """\
# vhostctl: restore-archive
upath="$1"; archive="$2"; stamp="$3"
if [ ! -f "$archive" ]; then
    echo "archive not found: $archive" >&2
    exit 2
fi
staging="$upath.rollback-$stamp"
previous="$upath.pre-rollback-$stamp"
rm -rf "$staging"
mkdir -p "$staging"
tar xzf "$archive" -C "$staging"
if [ -d "$upath" ]; then mv "$upath" "$previous"; fi
mv "$staging" "$upath"
rm -rf "$previous"
echo "RESTORED=$archive"
"""

# $1 = archive directory; prints "<mtime> <size> <path>" newest first
LIST_ARCHIVES = """\
# vhostctl: list-archives
if [ ! -d "$1" ]; then
    exit 0
fi
for path in "$1"/pre-migration-*.tar.gz; do
    [ -f "$path" ] || continue
    stat -c '%Y %s %n' "$path"
done | sort -rn
"""

__all__ = [
    "APPLY_OWNERSHIP",
    "BACKUP_ARCHIVE",
    "CREATE_LAYOUT",
    "CREATE_USER",
    "DIRS_EXIST",
    "FILES_EXIST",
    "FIND_TENANT_USER",
    "FOOTPRINT",
    "LIST_ARCHIVES",
    "LIST_UIDS",
    "OS_RELEASE",
    "PATH_MODES",
    "RESTORE_ARCHIVE",
    "SERVER_FQDN",
    "SERVICE_CONTROL",
    "SERVICE_STATUS",
    "STAT_OWNER",
    "STRUCTURAL_MIGRATE",
    "TIGHTEN_SECURITY",
    "USER_UID",
    "VERIFY_LAYOUT",
    "WRITE_FILE",
    "script_name",
    "with_assignments",
]
