"""Prompt templates sent to the model.

The grading parsers in ``grading`` depend on the output formats requested
here ("ĐIỂM SỐ: x/10", "Câu N: ..."); change both together.
"""
from __future__ import annotations
from typing import Optional


_EXAM_TYPE_GUIDE = """
  1. ĐỀ TỰ LUẬN THỰC HÀNH (Essay):
    - Dấu hiệu: "xây dựng hệ thống", "viết chương trình", "thiết kế cơ sở dữ liệu", "phân tích chi tiết", "viết bài luận".
    - Đáp án mong đợi là file code, tài liệu, dự án; KHÔNG THỂ trả lời trực tiếp bằng văn bản.
  2. ĐỀ VIẾT TRỰC TIẾP (Written):
    - Câu hỏi yêu cầu trả lời ngắn (1-3 từ, một câu, định nghĩa, công thức), không có lựa chọn A, B, C, D.
    - Có dấu gạch dưới "___", chỗ trống "(...)"; từ khóa "Điền", "Viết công thức", "Nêu định nghĩa", "Cho biết tên", "Tính giá trị".
  3. ĐỀ TRẮC NGHIỆM:
    - Mỗi câu có 2-5 lựa chọn rõ ràng (A, B, C, D hoặc 1, 2, 3, 4), có thể kèm đoạn văn.
    - Cụm từ thường gặp: "Chọn đáp án đúng", "Khoanh tròn", "Chọn phương án".
  Ưu tiên theo thứ tự trên. Nếu không khớp loại nào, trả về lỗi: "Không thể xác định loại đề thi từ tài liệu gốc."
"""

_CHOICE_FORMAT = """
  [
    {
      "id": "q1",
      "text": "Câu hỏi...",
      "options": ["A. Lựa chọn 1", "B. Lựa chọn 2", "C. Lựa chọn 3", "D. Lựa chọn 4"],
      "passage": null,
      "groupId": null
    }
  ]
  Câu hỏi dùng chung đoạn văn phải có cùng "passage" và cùng "groupId" (vd: "group1").
"""

_WRITTEN_FORMAT = """
  [
    {
      "id": "q1",
      "text": "Điền vào chỗ trống: Enzyme là ___",
      "options": [],
      "type": "written",
      "correctAnswer": "Đáp án chuẩn để chấm điểm"
    }
  ]
"""


def extraction_prompt(question_count: int) -> str:
	return f"""
CHẾ ĐỘ TRÍCH XUẤT TỪ TÀI LIỆU CÓ SẴN

BƯỚC 1: PHÂN LOẠI LOẠI ĐỀ THI
{_EXAM_TYPE_GUIDE}
BƯỚC 2: TRÍCH XUẤT CÂU HỎI
  - Nếu tài liệu có ít hơn {question_count} câu hỏi: trích xuất TẤT CẢ câu hỏi có sẵn.
  - Nếu tài liệu có từ {question_count} câu hỏi trở lên: trích xuất CHÍNH XÁC {question_count} câu hỏi đầu tiên.
  - KHÔNG tạo câu hỏi mới, chỉ trích xuất từ tài liệu gốc.

BƯỚC 3: ĐỊNH DẠNG KẾT QUẢ
  A. ĐỀ TRẮC NGHIỆM:
{_CHOICE_FORMAT}
  B. ĐỀ VIẾT TRỰC TIẾP:
{_WRITTEN_FORMAT}
  C. ĐỀ TỰ LUẬN THỰC HÀNH: trả về mảng rỗng []

QUY TẮC CHUNG: ngôn ngữ đồng nhất với tài liệu gốc; chỉ trả về mảng JSON.
"""


def generation_prompt(question_count: int) -> str:
	return f"""
CHẾ ĐỘ TẠO ĐỀ THI MỚI DỰA TRÊN TÀI LIỆU THAM KHẢO

BƯỚC 1: PHÂN LOẠI LOẠI ĐỀ THI
{_EXAM_TYPE_GUIDE}
BƯỚC 2: TẠO ĐỀ THI MỚI CÙNG LOẠI, KHÁC NỘI DUNG NHƯNG CÙNG CHỦ ĐỀ VÀ ĐỘ KHÓ
  A. ĐỀ TRẮC NGHIỆM:
    - Nếu tài liệu gốc CHỈ có câu hỏi theo đoạn văn: tạo số đoạn văn mới bằng tài liệu gốc, độ dài tương đương hoặc dài hơn,
      và TẤT CẢ {question_count} câu hỏi đều gắn với đoạn văn mới (không có passage: null).
    - Nếu tài liệu gốc có cả câu hỏi theo đoạn văn và câu hỏi đơn lẻ: giữ tỷ lệ tương tự, tổng {question_count} câu.
    - Nếu tài liệu gốc KHÔNG có đoạn văn: tạo {question_count} câu hỏi đơn lẻ với "passage": null, "groupId": null.
{_CHOICE_FORMAT}
  B. ĐỀ VIẾT TRỰC TIẾP: tạo {question_count} câu hỏi trả lời ngắn.
{_WRITTEN_FORMAT}
  C. ĐỀ TỰ LUẬN THỰC HÀNH: trả về mảng rỗng []

QUY TẮC CHUNG:
  - Tạo CHÍNH XÁC {question_count} câu hỏi (trừ tự luận).
  - LUÔN dùng ngôn ngữ giống tài liệu gốc.
  - Chỉ trả về mảng JSON.
"""


def batch_prompt(questions_in_batch: int, current_batch: int, total_batches: int, existing_type: Optional[str]) -> str:
	prefix = f"q{current_batch}_"
	if existing_type == "written":
		return f"""
CHẾ ĐỘ TẠO BÀI KIỂM TRA TỰ LUẬN VIẾT DỰA TRÊN TÀI LIỆU - BATCH {current_batch}/{total_batches}

Tạo {questions_in_batch} câu hỏi tự luận viết MỚI, KHÁC HOÀN TOÀN các câu hỏi ở batch trước.
  - Câu hỏi yêu cầu trả lời ngắn (1-5 từ, một câu, định nghĩa, công thức), không có lựa chọn A, B, C, D.
  - Dùng prefix id "{prefix}"; BẮT BUỘC có "type": "written" và "correctAnswer" cho mỗi câu.
  - TUYỆT ĐỐI KHÔNG TẠO CÂU HỎI TRẮC NGHIỆM TRONG BATCH NÀY.
{_WRITTEN_FORMAT}
"""
	if current_batch == 1 and not existing_type:
		return f"""
CHẾ ĐỘ XÁC ĐỊNH LOẠI BÀI KIỂM TRA DỰA TRÊN TÀI LIỆU - BATCH {current_batch}/{total_batches}

Phân tích tài liệu để chọn MỘT loại: viết trực tiếp (written) hoặc trắc nghiệm (multiple choice).
Tạo {questions_in_batch} câu hỏi, tất cả cùng một loại, dùng prefix id "{prefix}".
  - Viết trực tiếp: thêm "type": "written" và "correctAnswer" cho mỗi câu.
{_WRITTEN_FORMAT}
  - Trắc nghiệm: thêm mảng "options".
{_CHOICE_FORMAT}
"""
	return f"""
CHẾ ĐỘ TẠO BÀI KIỂM TRA MỚI DỰA TRÊN TÀI LIỆU THAM KHẢO - BATCH {current_batch}/{total_batches}

Tạo {questions_in_batch} câu hỏi trắc nghiệm MỚI, KHÁC HOÀN TOÀN các câu hỏi ở batch trước.
  - Phân tích ngôn ngữ, chủ đề và cấu trúc đoạn văn của tài liệu; giữ cùng ngôn ngữ và chủ đề.
  - Nếu tài liệu gốc KHÔNG có đoạn văn: "passage": null, "groupId": null.
  - Dùng prefix id "{prefix}" và groupId dạng "group{current_batch}_1".
  - Mỗi câu có 3-5 lựa chọn.
{_CHOICE_FORMAT}
"""


def choice_evaluation_prompt(summary: str) -> str:
	return f"""
Đánh giá bài làm kiểm tra sau và cho điểm theo thang 10 điểm:

{summary}

Hãy đánh giá TẤT CẢ các câu hỏi, kể cả những câu người dùng chưa trả lời.
Với mỗi câu, cung cấp đáp án đúng và giải thích ngắn gọn, có tham khảo đoạn văn nếu có.
  - Đúng: khi đáp án của người dùng HOÀN TOÀN GIỐNG đáp án đúng
  - Sai: khi đáp án của người dùng KHÁC đáp án đúng
  - Chưa trả lời: khi người dùng không chọn đáp án nào
Điểm số = số câu đúng / TỔNG SỐ câu hỏi x 10. Nếu không có câu nào đúng thì cho điểm 0.
Phản hồi phải bắt đầu với "ĐIỂM SỐ: [số điểm]/10", sau đó đánh giá từng câu theo format:
"Câu [số thứ tự]: [Đúng/Sai/Chưa trả lời] - Đáp án đúng: [đáp án đúng đầy đủ] - [Giải thích]"
"""


def written_grading_prompt(exam_name: str, question_total: int, answers_text: str) -> str:
	max_per_question = 10 / question_total if question_total else 0
	return f"""
Bạn là giáo viên chấm bài kiểm tra tự luận với hệ thống CHẤM ĐIỂM TỪNG PHẦN.

Thông tin bài kiểm tra:
- Tên bài kiểm tra: {exam_name}
- Tổng số câu hỏi: {question_total}
- Điểm tối đa mỗi câu: {max_per_question:.2f} điểm
- Tổng điểm: 10 điểm

Bài làm của học sinh:
{answers_text}

NGUYÊN TẮC CHẤM ĐIỂM TỪNG PHẦN:
- Chia mỗi câu thành các ý nhỏ; mỗi ý đạt 100%, 75%, 50%, 25% hoặc 0%.
- Điểm_câu = (Tổng % các ý) / số ý / 100 x Điểm_tối_đa_câu.
- KHÔNG cho 0 điểm nếu có bất kỳ phần nào đúng.
- Xác định đáp án chuẩn dựa trên tài liệu đính kèm.
- Xếp loại theo %: Xuất sắc 90-100, Tốt 70-89, Khá 50-69, Trung bình 30-49, Yếu 10-29, Kém 0-9.

ĐỊNH DẠNG KẾT QUẢ BẮT BUỘC:

ĐIỂM TỔNG: [tổng_điểm]/10

Câu 1: [điểm_thực_tế]/[điểm_tối_đa] - Tỷ lệ: [X.X]% - Trạng thái: [Xuất sắc/Tốt/Khá/Trung bình/Yếu/Kém]
+ Đáp án chuẩn: [tất cả các ý cần trả lời]
+ Phân tích: [câu hỏi có X ý: ...]
+ Chi tiết chấm điểm: [từng ý -> % - lý do]
+ Tính toán: [(% ý1 + % ý2 + ...) / số ý = %tổng = điểm/điểm_tối_đa]
+ Điểm mạnh: [...]
+ Cần cải thiện: [...]
+ Gợi ý: [...]

[Lặp lại cho tất cả {question_total} câu]

TỔNG KẾT:
- Nhận xét chung: [...]
- Khuyến nghị: [...]

Phải chấm TẤT CẢ {question_total} câu, tính điểm chính xác đến 2 chữ số thập phân.
"""


def essay_grading_prompt(topic: str) -> str:
	return f"""
Bạn là giáo viên đang chấm bài tự luận. Hãy chấm bài này theo thang điểm 10, trong đó:
- 9 điểm cho nội dung (mức độ đáp ứng yêu cầu đề bài, tính chính xác, độ chi tiết, tư duy phản biện)
- 1 điểm cho cách trình bày (cấu trúc, sự mạch lạc, hình thức)

Đề bài: {topic}

Bài làm của học sinh là tệp đính kèm. Trả lời theo định dạng sau:
ĐIỂM SỐ: [số điểm, một chữ số thập phân]/10

ĐÁNH GIÁ:
[Các điểm mạnh và điểm yếu của bài làm]

NHẬN XÉT CHUNG:
[Nhận xét tổng quát và đề xuất cải thiện]
"""
