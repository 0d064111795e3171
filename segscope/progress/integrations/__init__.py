from .download_progress import iter_download, iter_read

__all__ = ["iter_download", "iter_read"]
