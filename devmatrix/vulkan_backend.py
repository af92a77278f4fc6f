# pyright: reportUndefinedVariable=false
# pyright: reportGeneralTypeIssues=false

from __future__ import annotations

"""Vulkan compute backend for device matrices.

Every kernel dispatch is recorded into its own command buffer and submitted to
the device's single compute queue:

- the command buffer starts with ``vkCmdWaitEvents`` on the VkEvents of its
  wait-list (the producers of its input matrices),
- runs the kernel,
- and ends with ``vkCmdSetEvent`` on its own VkEvent.

The submission's fence lets the host block on it in ``read``. Finished
submissions are reaped lazily: their command buffer, descriptor set, event and
fence are released once they and every submission that waited on them are
done.

If the ``vulkan`` package (or the loader) is missing, ``HAS_VULKAN`` is False
and ComputeContext falls back to the NumPy device.
"""

import ctypes
import hashlib
import logging
import subprocess
from dataclasses import dataclass
from typing import Any, Optional, Sequence, TYPE_CHECKING

import numpy as np

from .config import Config
from .errors import KernelNotFound
from .kernels import SPECS, KernelSpec, Op, glsl_source, group_counts, kernel_name, pack_params
from .num import NumType


try:
    # python package: "vulkan" (cffi bindings)
    import vulkan as _vk  # type: ignore
    from vulkan import *  # type: ignore

    HAS_VULKAN = True
    UNAVAILABLE_REASON: Optional[str] = None
except Exception as exc:  # package missing, or libvulkan not loadable
    HAS_VULKAN = False
    UNAVAILABLE_REASON = f"Python package 'vulkan' unusable: {exc}"

# Help type checkers know the Vulkan symbols exist when installed.
if TYPE_CHECKING:  # pragma: no cover
    from vulkan import *  # type: ignore


logger = logging.getLogger(__name__)


_MAX_DESCRIPTOR_SETS = 4096
_UPDATE_CHUNK = 65536


@dataclass(eq=False)
class VulkanBuffer:
    """A host-visible Vulkan storage buffer."""

    length: int
    dtype: np.dtype
    nbytes: int
    buffer: Any
    memory: Any
    mode: Any = None

    # In-flight submissions using this buffer; destruction waits for them.
    users: int = 0
    freed: bool = False


@dataclass(eq=False)
class VulkanKernel:
    name: str
    spec: KernelSpec
    num_type: NumType
    pipeline: Any
    pipeline_layout: Any
    descriptor_set_layout: Any
    push_size: int
    local_size: int


class VulkanEvent:
    """Completion token of one submitted dispatch."""

    def __init__(
        self,
        device: "VulkanDevice",
        name: str,
        fence: Any,
        event: Any,
        command_buffer: Any,
        descriptor_set: Any,
        buffers: Sequence[VulkanBuffer],
    ) -> None:
        self._device = device
        self.name = name
        self.fence = fence
        self.event = event
        self.command_buffer = command_buffer
        self.descriptor_set = descriptor_set
        self.buffers = tuple(buffers)
        self.dependents: list[VulkanEvent] = []
        self.retired = False
        self.failure: Optional[BaseException] = None

    @property
    def complete(self) -> bool:
        if self.retired:
            return True
        return self._device._fence_signaled(self.fence)

    def wait(self, timeout: Optional[float] = None) -> None:
        if self.retired:
            return
        timeout_ns = None if timeout is None else int(timeout * 1e9)
        self._device._wait_fence(self.fence, timeout_ns)

    def __repr__(self) -> str:  # pragma: no cover - cosmetic
        state = "retired" if self.retired else ("complete" if self.complete else "pending")
        return f"VulkanEvent({self.name}, {state})"


class VulkanDevice:
    """One Vulkan device, its single compute queue and the compiled kernels."""

    name = "vulkan"

    def __init__(self, config: Optional[Config] = None) -> None:
        if not HAS_VULKAN:
            raise RuntimeError(UNAVAILABLE_REASON or "Vulkan backend unavailable")

        self.config = config or Config()

        self.instance: Optional[VkInstance] = None
        self.physical_device: Optional[VkPhysicalDevice] = None
        self.device: Optional[VkDevice] = None
        self.queue: Optional[VkQueue] = None
        self.queue_family_index: Optional[int] = None
        self.command_pool: Optional[VkCommandPool] = None
        self.descriptor_pool: Optional[VkDescriptorPool] = None
        self.device_name = ""
        self.supports_double = False

        self._kernels: dict[str, VulkanKernel] = {}
        self._buffers: set[VulkanBuffer] = set()
        self._in_flight: list[VulkanEvent] = []

        try:
            self._init()
        except Exception:
            self.close()
            raise

    # ------------------------------
    # Init
    # ------------------------------
    def _init(self) -> None:
        app_info = VkApplicationInfo(
            sType=VK_STRUCTURE_TYPE_APPLICATION_INFO,
            pApplicationName=b"devmatrix",
            applicationVersion=VK_MAKE_VERSION(0, 1, 0),
            pEngineName=b"devmatrix",
            engineVersion=VK_MAKE_VERSION(0, 1, 0),
            apiVersion=VK_API_VERSION_1_0,
        )
        create_info = VkInstanceCreateInfo(
            sType=VK_STRUCTURE_TYPE_INSTANCE_CREATE_INFO,
            pApplicationInfo=app_info,
        )
        self.instance = vkCreateInstance(create_info, None)

        devices = vkEnumeratePhysicalDevices(self.instance)
        if not devices:
            raise RuntimeError("No Vulkan physical devices found")

        # Pick the first device with a compute queue.
        for pd in devices:
            qprops = vkGetPhysicalDeviceQueueFamilyProperties(pd)
            for i, qp in enumerate(qprops):
                if qp.queueFlags & VK_QUEUE_COMPUTE_BIT:
                    self.physical_device = pd
                    self.queue_family_index = int(i)
                    break
            if self.physical_device is not None:
                break

        if self.physical_device is None or self.queue_family_index is None:
            raise RuntimeError("No Vulkan compute queue found")

        props = vkGetPhysicalDeviceProperties(self.physical_device)
        self.device_name = str(props.deviceName)
        features = vkGetPhysicalDeviceFeatures(self.physical_device)
        self.supports_double = bool(features.shaderFloat64)

        qci = VkDeviceQueueCreateInfo(
            sType=VK_STRUCTURE_TYPE_DEVICE_QUEUE_CREATE_INFO,
            queueFamilyIndex=self.queue_family_index,
            queueCount=1,
            pQueuePriorities=[1.0],
        )
        enabled = VkPhysicalDeviceFeatures(shaderFloat64=VK_TRUE if self.supports_double else VK_FALSE)
        dci = VkDeviceCreateInfo(
            sType=VK_STRUCTURE_TYPE_DEVICE_CREATE_INFO,
            queueCreateInfoCount=1,
            pQueueCreateInfos=[qci],
            pEnabledFeatures=enabled,
        )
        self.device = vkCreateDevice(self.physical_device, dci, None)
        self.queue = vkGetDeviceQueue(self.device, self.queue_family_index, 0)

        cpci = VkCommandPoolCreateInfo(
            sType=VK_STRUCTURE_TYPE_COMMAND_POOL_CREATE_INFO,
            queueFamilyIndex=self.queue_family_index,
            flags=VK_COMMAND_POOL_CREATE_RESET_COMMAND_BUFFER_BIT,
        )
        self.command_pool = vkCreateCommandPool(self.device, cpci, None)

        pool_sizes = [
            VkDescriptorPoolSize(
                type=VK_DESCRIPTOR_TYPE_STORAGE_BUFFER,
                descriptorCount=3 * _MAX_DESCRIPTOR_SETS,
            )
        ]
        dpci = VkDescriptorPoolCreateInfo(
            sType=VK_STRUCTURE_TYPE_DESCRIPTOR_POOL_CREATE_INFO,
            flags=VK_DESCRIPTOR_POOL_CREATE_FREE_DESCRIPTOR_SET_BIT,
            maxSets=_MAX_DESCRIPTOR_SETS,
            poolSizeCount=len(pool_sizes),
            pPoolSizes=pool_sizes,
        )
        self.descriptor_pool = vkCreateDescriptorPool(self.device, dpci, None)

        logger.info("Vulkan device: %s (float64=%s)", self.device_name, self.supports_double)

    # ------------------------------
    # Shaders / pipelines
    # ------------------------------
    def _ensure_spv(self, name: str, source: str) -> bytes:
        # Cache by source hash so a changed template never reuses a stale binary.
        digest = hashlib.sha1(source.encode("utf-8")).hexdigest()[:12]
        cache_dir = self.config.shader_cache_dir
        spv_path = cache_dir / f"{name}-{digest}.spv"
        if spv_path.exists():
            return spv_path.read_bytes()

        cache_dir.mkdir(parents=True, exist_ok=True)
        comp_path = cache_dir / f"{name}-{digest}.comp"
        comp_path.write_text(source, encoding="utf-8")
        try:
            subprocess.run(
                [self.config.glslc, "-fshader-stage=compute", str(comp_path), "-o", str(spv_path)],
                check=True,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise RuntimeError(f"{self.config.glslc} not found; install shader compiler tools") from e
        except subprocess.CalledProcessError as e:
            raise RuntimeError(
                f"Failed compiling {comp_path.name}:\n{e.stderr.decode('utf-8', errors='replace')}"
            ) from e

        logger.info("Compiled %s -> %s", comp_path.name, spv_path.name)
        return spv_path.read_bytes()

    def _create_shader_module(self, spv: bytes) -> VkShaderModule:
        # Vulkan expects uint32 words.
        if len(spv) % 4 != 0:
            raise ValueError("SPIR-V bytecode length must be multiple of 4")

        code_u32 = (ctypes.c_uint32 * (len(spv) // 4)).from_buffer_copy(spv)
        smci = VkShaderModuleCreateInfo(
            sType=VK_STRUCTURE_TYPE_SHADER_MODULE_CREATE_INFO,
            codeSize=len(spv),
            pCode=code_u32,
        )
        return vkCreateShaderModule(self.device, smci, None)

    def _create_pipeline(self, name: str, spec: KernelSpec, num_type: NumType) -> VulkanKernel:
        """Compute pipeline with ``spec.buffers`` storage buffers and a push-constant block."""

        bindings = [
            VkDescriptorSetLayoutBinding(
                binding=i,
                descriptorType=VK_DESCRIPTOR_TYPE_STORAGE_BUFFER,
                descriptorCount=1,
                stageFlags=VK_SHADER_STAGE_COMPUTE_BIT,
            )
            for i in range(spec.buffers)
        ]
        dsci = VkDescriptorSetLayoutCreateInfo(
            sType=VK_STRUCTURE_TYPE_DESCRIPTOR_SET_LAYOUT_CREATE_INFO,
            bindingCount=len(bindings),
            pBindings=bindings,
        )
        dsl = vkCreateDescriptorSetLayout(self.device, dsci, None)

        push_size = len(pack_params(spec, num_type, (0,) * len(spec.params)))
        pcr = VkPushConstantRange(
            stageFlags=VK_SHADER_STAGE_COMPUTE_BIT,
            offset=0,
            size=push_size,
        )
        plci = VkPipelineLayoutCreateInfo(
            sType=VK_STRUCTURE_TYPE_PIPELINE_LAYOUT_CREATE_INFO,
            setLayoutCount=1,
            pSetLayouts=[dsl],
            pushConstantRangeCount=1,
            pPushConstantRanges=[pcr],
        )
        pll = vkCreatePipelineLayout(self.device, plci, None)

        source = glsl_source(spec.op, num_type, self.config.local_size)
        sm = self._create_shader_module(self._ensure_spv(name, source))
        stage = VkPipelineShaderStageCreateInfo(
            sType=VK_STRUCTURE_TYPE_PIPELINE_SHADER_STAGE_CREATE_INFO,
            stage=VK_SHADER_STAGE_COMPUTE_BIT,
            module=sm,
            pName=b"main",
        )
        cpci = VkComputePipelineCreateInfo(
            sType=VK_STRUCTURE_TYPE_COMPUTE_PIPELINE_CREATE_INFO,
            stage=stage,
            layout=pll,
        )
        pipeline = vkCreateComputePipelines(self.device, VK_NULL_HANDLE, 1, [cpci], None)[0]
        vkDestroyShaderModule(self.device, sm, None)

        return VulkanKernel(
            name=name,
            spec=spec,
            num_type=num_type,
            pipeline=pipeline,
            pipeline_layout=pll,
            descriptor_set_layout=dsl,
            push_size=push_size,
            local_size=self.config.local_size,
        )

    def supports(self, num_type: NumType) -> bool:
        if num_type is NumType.DOUBLE:
            return self.supports_double
        return True

    def kernel(self, op: Op, num_type: NumType) -> VulkanKernel:
        name = kernel_name(op, num_type)
        cached = self._kernels.get(name)
        if cached is not None:
            return cached
        if not self.supports(num_type):
            raise KernelNotFound(f"{name}: {self.device_name} has no {num_type.type_name} shader support")
        k = self._create_pipeline(name, SPECS[op], num_type)
        self._kernels[name] = k
        return k

    # ------------------------------
    # Buffers
    # ------------------------------
    def _find_memory_type(self, type_bits: int, props: int) -> int:
        mem_props = vkGetPhysicalDeviceMemoryProperties(self.physical_device)
        for i in range(mem_props.memoryTypeCount):
            if (type_bits & (1 << i)) and (mem_props.memoryTypes[i].propertyFlags & props) == props:
                return i
        raise RuntimeError("Failed to find suitable Vulkan memory type")

    def allocate(self, length: int, dtype: Any, mode: Any = None) -> VulkanBuffer:
        dt = np.dtype(dtype)
        nbytes = int(length) * dt.itemsize
        bci = VkBufferCreateInfo(
            sType=VK_STRUCTURE_TYPE_BUFFER_CREATE_INFO,
            size=nbytes,
            usage=(
                VK_BUFFER_USAGE_STORAGE_BUFFER_BIT
                | VK_BUFFER_USAGE_TRANSFER_DST_BIT
                | VK_BUFFER_USAGE_TRANSFER_SRC_BIT
            ),
            sharingMode=VK_SHARING_MODE_EXCLUSIVE,
        )
        buf = vkCreateBuffer(self.device, bci, None)
        try:
            req = vkGetBufferMemoryRequirements(self.device, buf)
            mem_type = self._find_memory_type(
                req.memoryTypeBits,
                VK_MEMORY_PROPERTY_HOST_VISIBLE_BIT | VK_MEMORY_PROPERTY_HOST_COHERENT_BIT,
            )
            mai = VkMemoryAllocateInfo(
                sType=VK_STRUCTURE_TYPE_MEMORY_ALLOCATE_INFO,
                allocationSize=req.size,
                memoryTypeIndex=mem_type,
            )
            mem = vkAllocateMemory(self.device, mai, None)
        except Exception:
            vkDestroyBuffer(self.device, buf, None)
            raise
        vkBindBufferMemory(self.device, buf, mem, 0)

        out = VulkanBuffer(length=int(length), dtype=dt, nbytes=nbytes, buffer=buf, memory=mem, mode=mode)
        self._buffers.add(out)
        return out

    def free(self, buffer: VulkanBuffer) -> None:
        if buffer.freed:
            return
        buffer.freed = True
        if buffer.users == 0:
            self._destroy_buffer(buffer)

    def _destroy_buffer(self, buffer: VulkanBuffer) -> None:
        if self.device is None or buffer not in self._buffers:
            return
        self._buffers.discard(buffer)
        vkDestroyBuffer(self.device, buffer.buffer, None)
        vkFreeMemory(self.device, buffer.memory, None)

    def _map(self, memory: Any, nbytes: int) -> tuple[Optional[memoryview], Optional[int]]:
        """Map ``memory``; returns a byte view, or a raw address for pointer-like results."""

        mapped = vkMapMemory(self.device, memory, 0, nbytes, 0)
        if isinstance(mapped, (tuple, list)):
            mapped = mapped[1]

        # Some bindings return a pointer wrapper; normalize to its underlying value early.
        if hasattr(mapped, "value"):
            mapped = mapped.value
        if isinstance(mapped, (int, np.integer)):
            return None, int(mapped)
        return memoryview(mapped).cast("B"), None

    def write(self, buffer: VulkanBuffer, data: np.ndarray) -> None:
        arr = np.ascontiguousarray(data, dtype=buffer.dtype).reshape(-1)
        view, addr = self._map(buffer.memory, arr.nbytes)
        try:
            if view is not None and not view.readonly:
                view[: arr.nbytes] = memoryview(arr).cast("B")
                return
            if addr is not None:
                ctypes.memmove(addr, arr.ctypes.data, arr.nbytes)
                return
        finally:
            vkUnmapMemory(self.device, buffer.memory)

        # Some environments return a bytes-like snapshot here (not writable).
        self._update_buffer(buffer, arr.tobytes())

    def _update_buffer(self, buffer: VulkanBuffer, raw: bytes) -> None:
        """Upload through vkCmdUpdateBuffer (4-byte aligned, chunked)."""

        if len(raw) % 4 != 0:
            raise RuntimeError("vkCmdUpdateBuffer fallback only supports 4-byte aligned sizes")

        cb = self._alloc_command_buffer()
        fence = vkCreateFence(self.device, VkFenceCreateInfo(sType=VK_STRUCTURE_TYPE_FENCE_CREATE_INFO), None)
        try:
            begin = VkCommandBufferBeginInfo(
                sType=VK_STRUCTURE_TYPE_COMMAND_BUFFER_BEGIN_INFO,
                flags=VK_COMMAND_BUFFER_USAGE_ONE_TIME_SUBMIT_BIT,
            )
            vkBeginCommandBuffer(cb, begin)
            for offset in range(0, len(raw), _UPDATE_CHUNK):
                chunk = raw[offset : offset + _UPDATE_CHUNK]
                p_data = _vk.ffi.new("char[]", chunk)
                vkCmdUpdateBuffer(cb, buffer.buffer, offset, len(chunk), p_data)
            vkEndCommandBuffer(cb)

            submit = VkSubmitInfo(
                sType=VK_STRUCTURE_TYPE_SUBMIT_INFO,
                commandBufferCount=1,
                pCommandBuffers=[cb],
            )
            vkQueueSubmit(self.queue, 1, [submit], fence)
            self._wait_fence(fence)
        finally:
            vkDestroyFence(self.device, fence, None)
            vkFreeCommandBuffers(self.device, self.command_pool, 1, [cb])

    def read(self, buffer: VulkanBuffer, wait_list: Sequence[VulkanEvent]) -> np.ndarray:
        for event in wait_list:
            event.wait()

        view, addr = self._map(buffer.memory, buffer.nbytes)
        try:
            if view is not None:
                raw = bytes(view[: buffer.nbytes])
            else:
                raw = ctypes.string_at(addr, buffer.nbytes)
        finally:
            vkUnmapMemory(self.device, buffer.memory)

        self._reap()
        return np.frombuffer(raw, dtype=buffer.dtype, count=buffer.length).copy()

    # ------------------------------
    # Dispatch
    # ------------------------------
    def _alloc_command_buffer(self) -> VkCommandBuffer:
        cbai = VkCommandBufferAllocateInfo(
            sType=VK_STRUCTURE_TYPE_COMMAND_BUFFER_ALLOCATE_INFO,
            commandPool=self.command_pool,
            level=VK_COMMAND_BUFFER_LEVEL_PRIMARY,
            commandBufferCount=1,
        )
        return vkAllocateCommandBuffers(self.device, cbai)[0]

    def _alloc_descriptor_set(self, kernel: VulkanKernel) -> VkDescriptorSet:
        dsai = VkDescriptorSetAllocateInfo(
            sType=VK_STRUCTURE_TYPE_DESCRIPTOR_SET_ALLOCATE_INFO,
            descriptorPool=self.descriptor_pool,
            descriptorSetCount=1,
            pSetLayouts=[kernel.descriptor_set_layout],
        )
        try:
            return vkAllocateDescriptorSets(self.device, dsai)[0]
        except Exception as e:
            # Pool exhausted by in-flight work (python-vulkan may raise KeyError(code)
            # for VK_ERROR_OUT_OF_POOL_MEMORY); drain, reap and retry once.
            logger.debug("descriptor pool exhausted (%r); draining queue", e)
            self.finish()
            return vkAllocateDescriptorSets(self.device, dsai)[0]

    def dispatch(
        self,
        kernel: VulkanKernel,
        buffers: Sequence[VulkanBuffer],
        params: tuple,
        work_size: tuple[int, ...],
        wait_list: Sequence[VulkanEvent],
    ) -> VulkanEvent:
        self._reap()

        ds = self._alloc_descriptor_set(kernel)
        writes = [
            VkWriteDescriptorSet(
                sType=VK_STRUCTURE_TYPE_WRITE_DESCRIPTOR_SET,
                dstSet=ds,
                dstBinding=i,
                descriptorCount=1,
                descriptorType=VK_DESCRIPTOR_TYPE_STORAGE_BUFFER,
                pBufferInfo=[VkDescriptorBufferInfo(buffer=b.buffer, offset=0, range=b.nbytes)],
            )
            for i, b in enumerate(buffers)
        ]
        vkUpdateDescriptorSets(self.device, len(writes), writes, 0, None)

        cb = self._alloc_command_buffer()
        begin = VkCommandBufferBeginInfo(
            sType=VK_STRUCTURE_TYPE_COMMAND_BUFFER_BEGIN_INFO,
            flags=VK_COMMAND_BUFFER_USAGE_ONE_TIME_SUBMIT_BIT,
        )
        vkBeginCommandBuffer(cb, begin)

        barrier = VkMemoryBarrier(
            sType=VK_STRUCTURE_TYPE_MEMORY_BARRIER,
            srcAccessMask=VK_ACCESS_SHADER_READ_BIT | VK_ACCESS_SHADER_WRITE_BIT,
            dstAccessMask=VK_ACCESS_SHADER_READ_BIT | VK_ACCESS_SHADER_WRITE_BIT,
        )
        # Queue order: everything submitted earlier on this queue finishes first
        # (covers write-after-read on buffers no event links).
        vkCmdPipelineBarrier(
            cb,
            VK_PIPELINE_STAGE_COMPUTE_SHADER_BIT,
            VK_PIPELINE_STAGE_COMPUTE_SHADER_BIT,
            0,
            1,
            [barrier],
            0,
            None,
            0,
            None,
        )

        waits = [e for e in wait_list if not e.retired]
        if waits:
            vkCmdWaitEvents(
                cb,
                len(waits),
                [e.event for e in waits],
                VK_PIPELINE_STAGE_COMPUTE_SHADER_BIT,
                VK_PIPELINE_STAGE_COMPUTE_SHADER_BIT,
                1,
                [barrier],
                0,
                None,
                0,
                None,
            )

        vkCmdBindPipeline(cb, VK_PIPELINE_BIND_POINT_COMPUTE, kernel.pipeline)
        vkCmdBindDescriptorSets(
            cb,
            VK_PIPELINE_BIND_POINT_COMPUTE,
            kernel.pipeline_layout,
            0,
            1,
            [ds],
            0,
            None,
        )

        payload = pack_params(kernel.spec, kernel.num_type, params)
        pc = _vk.ffi.new("char[]", payload)
        vkCmdPushConstants(
            cb,
            kernel.pipeline_layout,
            VK_SHADER_STAGE_COMPUTE_BIT,
            0,
            len(payload),
            pc,
        )
        gx, gy, gz = group_counts(kernel.spec, work_size, kernel.local_size)
        vkCmdDispatch(cb, gx, gy, gz)

        # Make the results visible to host reads after the fence.
        host_barrier = VkMemoryBarrier(
            sType=VK_STRUCTURE_TYPE_MEMORY_BARRIER,
            srcAccessMask=VK_ACCESS_SHADER_WRITE_BIT,
            dstAccessMask=VK_ACCESS_HOST_READ_BIT,
        )
        vkCmdPipelineBarrier(
            cb,
            VK_PIPELINE_STAGE_COMPUTE_SHADER_BIT,
            VK_PIPELINE_STAGE_HOST_BIT,
            0,
            1,
            [host_barrier],
            0,
            None,
            0,
            None,
        )

        event = vkCreateEvent(self.device, VkEventCreateInfo(sType=VK_STRUCTURE_TYPE_EVENT_CREATE_INFO), None)
        vkCmdSetEvent(cb, event, VK_PIPELINE_STAGE_COMPUTE_SHADER_BIT)
        vkEndCommandBuffer(cb)

        fence = vkCreateFence(self.device, VkFenceCreateInfo(sType=VK_STRUCTURE_TYPE_FENCE_CREATE_INFO), None)
        submit = VkSubmitInfo(
            sType=VK_STRUCTURE_TYPE_SUBMIT_INFO,
            commandBufferCount=1,
            pCommandBuffers=[cb],
        )
        try:
            vkQueueSubmit(self.queue, 1, [submit], fence)
        except Exception:
            vkDestroyFence(self.device, fence, None)
            vkDestroyEvent(self.device, event, None)
            vkFreeCommandBuffers(self.device, self.command_pool, 1, [cb])
            vkFreeDescriptorSets(self.device, self.descriptor_pool, 1, [ds])
            raise

        out = VulkanEvent(self, kernel.name, fence, event, cb, ds, buffers)
        for w in waits:
            w.dependents.append(out)
        for b in buffers:
            b.users += 1
        self._in_flight.append(out)
        return out

    # ------------------------------
    # Completion
    # ------------------------------
    def _fence_signaled(self, fence: Any) -> bool:
        try:
            vkGetFenceStatus(self.device, fence)
        except VkNotReady:
            return False
        return True

    def _wait_fence(self, fence: Any, timeout_ns: Optional[int] = None) -> None:
        timeout = self.config.fence_timeout_ns if timeout_ns is None else timeout_ns
        try:
            vkWaitForFences(self.device, 1, [fence], VK_TRUE, timeout)
        except VkTimeout as e:
            raise TimeoutError(f"device did not finish within {timeout / 1e9:.1f}s") from e

    def _reap(self) -> None:
        # Oldest first; stop at the first submission that can't go yet.
        done = 0
        for ev in self._in_flight:
            # Later submissions may still be waiting on ev's VkEvent.
            if not (self._fence_signaled(ev.fence) and all(d.complete for d in ev.dependents)):
                break
            self._retire(ev)
            done += 1
        if done:
            del self._in_flight[:done]

    def _retire(self, ev: VulkanEvent) -> None:
        vkDestroyFence(self.device, ev.fence, None)
        vkDestroyEvent(self.device, ev.event, None)
        vkFreeCommandBuffers(self.device, self.command_pool, 1, [ev.command_buffer])
        vkFreeDescriptorSets(self.device, self.descriptor_pool, 1, [ev.descriptor_set])
        ev.retired = True
        ev.dependents.clear()
        for b in ev.buffers:
            b.users -= 1
            if b.freed and b.users == 0:
                self._destroy_buffer(b)
        ev.buffers = ()

    def finish(self) -> None:
        if self.queue is None:
            return
        vkQueueWaitIdle(self.queue)
        # Everything is complete now, so every submission can go.
        for ev in self._in_flight:
            self._retire(ev)
        self._in_flight = []

    def close(self) -> None:
        if self.device is not None:
            device = self.device
            if self.queue is not None:
                self.finish()
            for b in list(self._buffers):
                self._destroy_buffer(b)
            for k in self._kernels.values():
                vkDestroyPipeline(device, k.pipeline, None)
                vkDestroyPipelineLayout(device, k.pipeline_layout, None)
                vkDestroyDescriptorSetLayout(device, k.descriptor_set_layout, None)
            self._kernels.clear()
            if self.descriptor_pool is not None:
                vkDestroyDescriptorPool(device, self.descriptor_pool, None)
                self.descriptor_pool = None
            if self.command_pool is not None:
                vkDestroyCommandPool(device, self.command_pool, None)
                self.command_pool = None
            self.device = None  # Prevent double cleanup
            self.queue = None
            vkDestroyDevice(device, None)

        if self.instance is not None:
            instance = self.instance
            self.instance = None
            vkDestroyInstance(instance, None)
