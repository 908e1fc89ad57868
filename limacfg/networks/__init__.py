"""Host network configuration, daemon command lines, sudoers, path checks and user-mode network paths."""