"""Windows bootstrap payload built from explicit installer flags."""

import base64
from dataclasses import dataclass, fields
from textwrap import dedent


@dataclass(frozen=True)
class InstallerFlags:
    """Optional software installed on first boot. One block per flag."""

    graphic_card_driver: bool = True
    steam: bool = True
    gog_galaxy: bool = False
    origin: bool = False
    epic_games_launcher: bool = False
    uplay: bool = False
    auto_login: bool = True
    sunshine: bool = True

    @classmethod
    def names(cls) -> list[str]:
        return [f.name for f in fields(cls)]

    def enabled(self) -> list[str]:
        return [name for name in self.names() if getattr(self, name)]


def _download_and_run(label: str, url: str, args: str) -> str:
    return dedent(f"""\
        Write-Output "Installing {label}..."
        $installer = "$env:TEMP\\{label.replace(' ', '')}Setup.exe"
        Invoke-WebRequest -Uri "{url}" -OutFile $installer -UseBasicParsing
        Start-Process -FilePath $installer -ArgumentList "{args}" -Wait
        """)


INSTALLER_BLOCKS = {
    "graphic_card_driver": dedent("""\
        Write-Output "Installing NVIDIA gaming driver..."
        $bucket = "nvidia-gaming"
        $objects = Get-S3Object -BucketName $bucket -KeyPrefix "windows/latest" -Region us-east-1
        foreach ($obj in $objects) {
            if ($obj.Size -gt 0) {
                $file = Join-Path "$env:TEMP\\nvidia" $obj.Key
                Read-S3Object -BucketName $bucket -Key $obj.Key -File $file -Region us-east-1
            }
        }
        $driver = Get-ChildItem "$env:TEMP\\nvidia" -Recurse -Filter "*.exe" | Select-Object -First 1
        Start-Process -FilePath $driver.FullName -ArgumentList "-s -n" -Wait
        New-ItemProperty -Path "HKLM:\\SYSTEM\\CurrentControlSet\\Services\\nvlddmkm\\Global" -Name "vGamingMarketplace" -PropertyType DWord -Value 2 -Force
        """),
    "steam": _download_and_run(
        "Steam",
        "https://cdn.cloudflare.steamstatic.com/client/installer/SteamSetup.exe",
        "/S",
    ),
    "gog_galaxy": _download_and_run(
        "GOG Galaxy",
        "https://webinstallers.gog-statics.com/download/GOG_Galaxy_2.0.exe",
        "/VERYSILENT /NORESTART",
    ),
    "origin": _download_and_run(
        "Origin",
        "https://origin-a.akamaihd.net/Origin-Client-Download/origin/live/OriginThinSetup.exe",
        "/silent",
    ),
    "epic_games_launcher": _download_and_run(
        "Epic Games Launcher",
        "https://launcher-public-service-prod06.ol.epicgames.com/launcher/api/installer/download/EpicGamesLauncherInstaller.msi",
        "/quiet",
    ),
    "uplay": _download_and_run(
        "Uplay",
        "https://ubistatic3-a.akamaihd.net/orbit/launcher_installer/UbisoftConnectInstaller.exe",
        "/S",
    ),
    "auto_login": dedent("""\
        Write-Output "Enabling administrator auto-login..."
        $winlogon = "HKLM:\\SOFTWARE\\Microsoft\\Windows NT\\CurrentVersion\\Winlogon"
        Set-ItemProperty -Path $winlogon -Name "AutoAdminLogon" -Value "1"
        Set-ItemProperty -Path $winlogon -Name "DefaultUserName" -Value "Administrator"
        Set-ItemProperty -Path $winlogon -Name "DefaultPassword" -Value $password
        """),
    "sunshine": _download_and_run(
        "Sunshine",
        "https://github.com/LizardByte/Sunshine/releases/latest/download/sunshine-windows-installer.exe",
        "/S",
    ),
}


def _password_block(secret_name: str, region: str) -> str:
    return dedent(f"""\
        $password = (Get-SSMParameter -Name "{secret_name}" -WithDecryption $true -Region "{region}").Value
        net user Administrator "$password"
        """)


def render_user_data(
    secret_name: str,
    region: str,
    flags: InstallerFlags,
    *,
    skip_install: bool = False,
) -> str:
    """Build the PowerShell first-boot script.

    The administrator password is read from SSM on the instance itself, so
    the script only carries the parameter name.

    :param secret_name: SSM parameter holding the administrator password
    :param region: Region of the SSM parameter
    :param flags: Installer selection
    :param skip_install: Return an empty payload
    :return: User data script, or ``""`` when skipped
    """
    if skip_install:
        return ""

    blocks = [_password_block(secret_name, region)]
    blocks.extend(INSTALLER_BLOCKS[name] for name in flags.enabled())
    body = "\n".join(blocks)
    return f"<powershell>\n$ErrorActionPreference = \"Continue\"\n{body}</powershell>\n<persist>false</persist>\n"


def encode_user_data(script: str) -> str:
    """Spot launch specifications take user data pre-encoded as base64."""
    return base64.b64encode(script.encode()).decode()
