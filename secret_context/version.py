"""Secret Context Meta information.
   Secret Context keeps encrypted credentials, SSH keys and certificates
   per workspace user, behind a cached store with an audit trail.
"""
__title__ = 'secret_context'
__description__ = (
   'Encrypted per-identity secret contexts with a read-through cache '
   'and a hash-only audit trail.'
)
__version__ = '0.1.0'
__license__ = 'Apache-2.0'
