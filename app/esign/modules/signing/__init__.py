"""
Signing workflow module.

- A document carries an ordered roster of signer slots
- Each designated signer signs once; the ledger keeps one record per signer
- The document flips to "signed" when every slot is signed
- Every state change is recorded to the append-only audit trail
"""
