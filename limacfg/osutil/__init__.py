"""Host helpers: users and groups, machine ID, file ownership, signals, Rosetta, proxy and DNS settings."""