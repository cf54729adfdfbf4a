from typing import Optional

from coincurve import PrivateKey as CoincurvePrivateKey
from coincurve import PublicKey as CoincurvePublicKey
from coincurve import PublicKeyXOnly

# order of the secp256k1 base field
FIELD_P = 2**256 - 2**32 - 977


class PublicKey(CoincurvePublicKey):
    """Point on secp256k1 with the arithmetic used by the blind signature scheme.

    coincurve returns its own PublicKey from arithmetic, every result is
    wrapped back into this class through its compressed serialization.
    """

    def __init__(self, data: bytes, raw: bool = True):
        super().__init__(data)

    @classmethod
    def from_coincurve(cls, key: CoincurvePublicKey) -> "PublicKey":
        return cls(key.format(compressed=True))

    def __add__(self, pubkey2):
        if isinstance(pubkey2, CoincurvePublicKey):
            return self.from_coincurve(
                CoincurvePublicKey.combine_keys([self, pubkey2])
            )
        else:
            raise TypeError("Can't add pubkey and %s" % pubkey2.__class__)

    def __neg__(self):
        x, y = self.point()
        return self.from_coincurve(CoincurvePublicKey.from_point(x, FIELD_P - y))

    def __sub__(self, pubkey2):
        if isinstance(pubkey2, CoincurvePublicKey):
            return self + (-PublicKey.from_coincurve(pubkey2))
        else:
            raise TypeError("Can't subtract pubkey and %s" % pubkey2.__class__)

    def mult(self, privkey: "PrivateKey") -> "PublicKey":
        if isinstance(privkey, CoincurvePrivateKey):
            return self.from_coincurve(self.multiply(privkey.secret))
        else:
            raise TypeError("Can't multiply with non privatekey")

    def __eq__(self, pubkey2):
        if isinstance(pubkey2, CoincurvePublicKey):
            return self.format() == pubkey2.format()
        return False

    def __hash__(self):
        return hash(self.format())

    def serialize(self, compressed: bool = True) -> bytes:
        return self.format(compressed=compressed)

    def to_data(self):
        return [self.format().hex()]

    def schnorr_verify(self, msg: bytes, signature: bytes, *args, **kwargs) -> bool:
        # BIP340 keys are the x coordinate only
        xonly = PublicKeyXOnly(self.format()[1:])
        return xonly.verify(signature, msg)


class PrivateKey(CoincurvePrivateKey):
    def __init__(self, privkey: Optional[bytes] = None, raw: bool = True):
        super().__init__(privkey)

    @property
    def private_key(self) -> bytes:
        return self.secret

    @property
    def pubkey(self) -> PublicKey:
        return PublicKey.from_coincurve(self.public_key)

    def serialize(self) -> str:
        return self.secret.hex()

    def schnorr_sign(self, msg: bytes, *args, **kwargs) -> bytes:
        return self.sign_schnorr(msg)
