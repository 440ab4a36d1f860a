from __future__ import annotations

import logging

from ..build_ctx import BuildCtx
from ..build_state import BuildState, Stage
from ..errors import ExternalToolFailure, ToolTimeout
from ..lib.chroot import chroot_cmd, chroot_log_tail, setup_chroot_network, write_configure_script
from ..lib.mounts import verify_no_foreign_mounts

logger = logging.getLogger(__name__)


class ChrootConfigureStage:
    stage = Stage.CHROOT_CONFIGURE

    def run(self, ctx: BuildCtx, state: BuildState) -> BuildState:
        root = ctx.extract_dir
        verify_no_foreign_mounts(root, ctx.mount_table())

        setup_chroot_network(root)
        script = write_configure_script(root, state.distribution)
        ctx.coordinator.register_temp_path(script)

        try:
            with ctx.coordinator.mount_virtual_filesystems(root):
                chroot_cmd(
                    ctx.tools,
                    root,
                    ["/bin/bash", "/tmp/configure_system.sh"],
                    timeout=ctx.cfg.chroot_timeout,
                    log_path=ctx.paths.log("chroot.log"),
                )
        except (ExternalToolFailure, ToolTimeout):
            tail = chroot_log_tail(root)
            if tail:
                logger.error("Last lines of the chroot log:")
                for line in tail:
                    logger.error("  %s", line)
            raise
        finally:
            script.unlink(missing_ok=True)

        verify_no_foreign_mounts(root, ctx.mount_table())
        return state
