"""CRM integration module -- OAuth connections, credentials and sync.

Provides the Credential Vault, per-provider connectors, the Reconciliation
Engine that maps provider records onto local accounts, contacts and deals,
and IntegrationService for the HTTP layer.
"""
