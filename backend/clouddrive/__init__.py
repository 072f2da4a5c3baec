"""Personal cloud-drive client core: virtual file system over remote stores."""
