SWAP_NUT = 3
MINT_NUT = 4
MELT_NUT = 5
INFO_NUT = 6
STATE_NUT = 7
RESTORE_NUT = 9
P2PK_NUT = 11
DETERMINISTIC_SECRETS_NUT = 13
WEBSOCKETS_NUT = 17
MINT_QUOTE_SIGNATURE_NUT = 20
