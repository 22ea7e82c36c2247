from weaver.backup.ipfs import BackupResult, IPFSBackupClient, gateway_url_for

__all__ = ["BackupResult", "IPFSBackupClient", "gateway_url_for"]
