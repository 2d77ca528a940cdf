"""promote-release pipeline stages, in run order.

version_resolver
    ``VersionResolver`` picks the commit and version for a channel.
fetch
    ``ArtifactSource`` stages CI artifacts through the download cache.
transform
    ``Transformer`` derives recompressed public variants.
manifest_builder
    ``ManifestBuilder`` serializes the manifest; ``MarkerCheck`` decides
    whether there is anything to release.
signer
    ``Signer`` produces the detached Ed25519 signature.
publisher
    ``Publisher`` performs the ordered writes, marker last.
invalidator
    ``CacheInvalidator`` purges CloudFront and Fastly.
verifier
    ``verify_release`` re-checks a published release.
"""
