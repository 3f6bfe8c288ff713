"""
Realtime channel management.

Import from the submodules directly (for example
'from tagclient.realtime.connection_manager import ConnectionManager');
the offline queue depends on the transport contract defined here, so this
package intentionally re-exports nothing.
"""
