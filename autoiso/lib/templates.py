"""Text written into the staged tree and the ISO: chroot script and boot menus."""

from __future__ import annotations

from .distro import display_name, uses_casper

CASPER_PACKAGES = (
    "casper",
    "discover",
    "laptop-detect",
    "os-prober",
    "net-tools",
    "network-manager",
)

LIVE_BOOT_PACKAGES = (
    "live-boot",
    "live-config",
    "live-config-systemd",
    "discover",
    "laptop-detect",
    "network-manager",
)

KALI_EXTRA_PACKAGES = (
    "kali-linux-core",
    "firmware-linux",
    "firmware-linux-nonfree",
)

_SCRIPT_HEAD = """\
#!/bin/bash
set -e

export DEBIAN_FRONTEND=noninteractive
export LANG=C.UTF-8
export PATH="/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"

exec > >(tee -a /tmp/chroot.log)
exec 2>&1

echo "[CHROOT] Starting configuration at $(date)"

# The copy skips cache contents; apt and debconf need these to exist.
mkdir -p /var/cache/apt/archives/partial /var/cache/debconf

if ! ping -c 1 -W 2 8.8.8.8 >/dev/null 2>&1; then
    echo "[CHROOT] Warning: No internet connectivity detected"
fi

for i in 1 2 3; do
    if apt-get update; then
        break
    fi
    echo "[CHROOT] Update attempt $i failed, retrying..."
    sleep 2
done
"""

_SCRIPT_TAIL = """
echo "[CHROOT] Installing packages..."
for pkg in "${{PACKAGES[@]}}"; do
    if apt-get install -y --no-install-recommends "$pkg"; then
        echo "[CHROOT] Installed: $pkg"
    else
        echo "[CHROOT] Warning: Failed to install $pkg (may not be critical)"
    fi
done

if ! id -u {user} >/dev/null 2>&1; then
    useradd -m -s /bin/bash -G sudo,audio,video,plugdev,netdev,cdrom {user} || true
    echo "{user}:{password}" | chpasswd || true
fi

if command -v locale-gen >/dev/null 2>&1; then
    locale-gen en_US.UTF-8 || true
    update-locale LANG=en_US.UTF-8 || true
fi
{extra}
if command -v update-initramfs >/dev/null 2>&1; then
    update-initramfs -u -k all || update-initramfs -c -k all || true
fi

apt-get autoremove -y || true
apt-get autoclean || true

echo "[CHROOT] Configuration complete at $(date)"
"""

_KALI_LIVE_CONFIG = """
mkdir -p /etc/live/config.conf.d
cat > /etc/live/config.conf.d/autoiso.conf << 'EOF'
LIVE_HOSTNAME="kali"
LIVE_USERNAME="kali"
LIVE_USER_FULLNAME="Kali Live user"
EOF
"""


def configure_script(distribution: str) -> str:
    if uses_casper(distribution):
        packages = list(CASPER_PACKAGES)
        kernel_pkg = "linux-generic"
    else:
        packages = list(LIVE_BOOT_PACKAGES)
        kernel_pkg = "linux-image-amd64"
    extra = ""
    user, password = "user", "live"
    if distribution == "kali":
        packages += KALI_EXTRA_PACKAGES
        extra = _KALI_LIVE_CONFIG
        user, password = "kali", "kali"

    pkg_lines = "\n".join(f"    {p}" for p in packages)
    body = (
        f"\nPACKAGES=(\n{pkg_lines}\n)\n\n"
        'if ! dpkg -l | grep -q "^ii.*linux-image"; then\n'
        f"    PACKAGES+=({kernel_pkg})\n"
        "fi\n"
    )
    return _SCRIPT_HEAD + body + _SCRIPT_TAIL.format(user=user, password=password, extra=extra)


def kernel_args(distribution: str) -> str:
    if uses_casper(distribution):
        return "boot=casper live-media-path=/live"
    return "boot=live components"


def isolinux_config(distribution: str) -> str:
    name = display_name(distribution)
    args = kernel_args(distribution)
    return (
        "UI menu.c32\n"
        "PROMPT 0\n"
        f"MENU TITLE {name} Live Boot Menu\n"
        "TIMEOUT 300\n\n"
        "LABEL live\n"
        f"  MENU LABEL ^{name} Live\n"
        "  KERNEL /live/vmlinuz\n"
        f"  APPEND initrd=/live/initrd.img {args} quiet splash ---\n\n"
        "LABEL nomodeset\n"
        f"  MENU LABEL {name} Live (^safe graphics)\n"
        "  KERNEL /live/vmlinuz\n"
        f"  APPEND initrd=/live/initrd.img {args} nomodeset quiet splash ---\n"
    )


def grub_config(distribution: str) -> str:
    name = display_name(distribution)
    args = kernel_args(distribution)
    entries = [
        (f"{name} Live", f"{args} quiet splash"),
        (f"{name} Live (nomodeset)", f"{args} nomodeset quiet splash"),
    ]
    if distribution == "kali":
        entries += [
            ("Kali Live (forensic mode)", f"{args} noswap noautomount"),
            ("Kali Live (persistence)", f"{args} persistence quiet splash"),
        ]
    else:
        entries.append(("Check disc for defects", f"{args} integrity-check quiet splash"))

    out = "set timeout=30\nset default=0\n\n"
    out += "search --no-floppy --set=root --file /live/filesystem.squashfs\n\n"
    for title, kargs in entries:
        out += (
            f'menuentry "{title}" {{\n'
            f"    linux /live/vmlinuz {kargs} ---\n"
            "    initrd /live/initrd.img\n"
            "}\n\n"
        )
    return out
